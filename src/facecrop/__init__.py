"""Batch face detection and content-addressed face cropping."""
