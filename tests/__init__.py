"""Tests for the ML engine toolkit.

Unit tests per module live beside this file; ``contract/`` holds the
conformance suite every engine must pass.
"""
