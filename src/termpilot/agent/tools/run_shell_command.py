from __future__ import annotations

from termpilot.agent.tools.sandbox import ToolContext
from termpilot.shell import execute_command


async def run_shell_command(ctx: ToolContext, command: str) -> dict:
    """Execute a shell command in the session cwd after the user approves it."""
    if not await ctx.confirm(command):
        return {"content": "User declined to run this command.", "error": None}

    ctx.on_command_start(command)
    result = await execute_command(
        command,
        ctx.cwd,
        ctx.cancel,
        on_output=ctx.on_command_output,
        timeout=ctx.command_timeout,
    )
    ctx.on_command_done(result)

    output = result.output
    if result.timed_out:
        content = f"Command timed out after {ctx.command_timeout:g}s.\nPartial output:\n{output}"
    elif result.exit_code != 0:
        content = f"Command exited with code {result.exit_code}\n{output}"
    else:
        content = output or "(no output)"
    return {"content": content, "error": None, "returncode": result.exit_code}
