"""Services around the image pipeline: artifact fetch, node configuration
volumes and the run summary."""
