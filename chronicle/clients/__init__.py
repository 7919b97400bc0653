"""HTTP clients for the text, image and vision collaborators."""
