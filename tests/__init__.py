"""Tests for the model serving service.

Unit tests cover the shared libraries, model store, inference engine and
dataset helpers; the API tests drive the FastAPI application in-process.
"""
