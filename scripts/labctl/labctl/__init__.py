"""labctl - command line client for Lab Range."""
