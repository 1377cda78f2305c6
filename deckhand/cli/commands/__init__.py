"""One module per ``deckhand`` subcommand."""
