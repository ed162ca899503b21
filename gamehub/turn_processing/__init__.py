"""Action validation helpers.

Human and AI actions flow through the same pipelines, so a rejected move looks the
same in results and logs regardless of who sent it.
"""
