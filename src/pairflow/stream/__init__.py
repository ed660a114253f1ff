"""Stream fragment classification and flow item construction."""
