"""KitaDoc Audio Pipeline - Upload API service.

FastAPI service accepting audio recordings for asynchronous analysis and
exposing the pollable status of each run.
"""

__all__: list[str] = []
