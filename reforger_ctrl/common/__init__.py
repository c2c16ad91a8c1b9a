"""Shared helpers (errors, constants, settings, logging) for reforger_ctrl."""
