"""Agent control loop, streaming transport and tool sandbox."""
