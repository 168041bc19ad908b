"""Work-item tracker providers."""
