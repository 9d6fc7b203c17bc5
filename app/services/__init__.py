"""Library, settings and background transcoding services."""
