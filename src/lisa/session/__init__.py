"""Session scheduling and supervision."""
