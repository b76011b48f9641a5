"""Request/response models for the HTTP surface."""
