"""Cloud Function entry points for the Storage Image Describer."""
