"""canvasrefine: annotation-driven refinement of generated images."""
