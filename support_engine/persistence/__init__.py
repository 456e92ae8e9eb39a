"""In-process implementations of the collaborator contracts."""
