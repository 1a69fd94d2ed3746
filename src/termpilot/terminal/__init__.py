"""Terminal integration: input multiplexer, session attachment and the PTY host."""
