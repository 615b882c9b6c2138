"""Runtime state of the serving process: active model and inference."""
