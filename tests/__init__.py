"""
Test suite for the support engine.

- unit/: Component-level tests
- integration/: End-to-end flow tests
"""
