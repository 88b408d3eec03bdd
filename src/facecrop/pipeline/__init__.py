"""Region extraction, cropping, storage and batch orchestration."""
