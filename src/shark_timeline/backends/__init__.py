"""Calendar backends."""
