"""Core gameplay primitives (game state, action results, state signatures).

Kept free of FastAPI concerns so it can be reused by the manager, the AI, and tests.
"""
