"""Versioned keyword and pattern rule sets for language understanding."""
