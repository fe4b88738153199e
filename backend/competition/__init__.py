"""Trading competition backend package."""
