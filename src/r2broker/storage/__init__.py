"""S3-compatible object store client for r2broker."""
