"""KitaDoc Audio Pipeline - Core application modules.

Provides the asynchronous audio-to-documentation pipeline:
- Upload validation for multipart audio uploads
- Process status tracking (pollable state machine)
- Analysis orchestration against the external audio-processing service
- Fan-out of analysis results into documentation entries
"""

__version__ = "0.1.0"
