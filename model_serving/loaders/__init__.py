"""Loaders for model artifacts and datasets.

Loaders encapsulate how models are materialized from disk and validated
before they are handed to the inference engine.

Goals
- Provide a consistent interface regardless of the artifact format
- Never hand out a partially initialised model
"""
