"""Product I/O: FITS frames, master biases and batch summaries."""
