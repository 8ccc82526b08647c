"""
EmbedTV Test Suite

Test Categories:
- unit/: Fast, isolated unit tests
- integration/: API tests against the FastAPI app with fake components
"""
