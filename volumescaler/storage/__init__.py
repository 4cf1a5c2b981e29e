"""Local storage collaborators: mount discovery and usage sampling."""
