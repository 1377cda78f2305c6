"""Deckhand CLI — Typer-based command-line interface.

Provides the ``deckhand`` command with one subcommand per pipeline stage,
the full pipeline run, rollback, status and proxy rendering. Every
subcommand is idempotent and independently re-runnable.

All output uses Rich for formatted terminal display.
"""
