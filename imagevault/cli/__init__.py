"""imagevault command-line interface."""
