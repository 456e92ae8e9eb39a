"""Learning components that run when conversations close."""
