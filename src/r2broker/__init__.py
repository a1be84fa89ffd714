"""r2broker: signed download URLs for S3-compatible object stores."""
