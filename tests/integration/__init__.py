"""
Integration tests for AQB components.

Integration tests focus on testing interactions between multiple components,
including database operations, external API calls (mocked), and data pipelines.
"""
