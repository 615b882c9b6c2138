"""API subpackage for the model serving service.

Routes cover inference, model metadata and batch jobs. They are thin layers
over the ``ModelManager``; ``encoder`` turns results and errors into
responses so transport code stays free of business logic.
"""
