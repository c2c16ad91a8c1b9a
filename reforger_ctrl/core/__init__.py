"""Game-server control subsystem: executors, install, query, RCON, lifecycle."""
