"""Book trailer generation engine."""
