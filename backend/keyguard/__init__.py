"""Key security and request protection core for the expense backend."""
