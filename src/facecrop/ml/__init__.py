"""Face detection model and its lifecycle."""
