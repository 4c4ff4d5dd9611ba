"""Engine contract tests.

These tests validate that every engine honors the guarantees the execution
wrapper relies on (row alignment, explanation columns, unsupported-operation
errors, read-only describe). They focus on shape and semantics rather than
specific model predictions.
"""
