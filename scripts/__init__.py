"""Utility scripts for working on the engine toolkit.

Scripts include:
- ``scaffold_engine.py``: generate a new engine module and its test.
"""
