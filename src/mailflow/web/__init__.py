"""HTTP trigger API for mailflow.

Provides a FastAPI app for:
- Starting, inspecting and cancelling bulk processing jobs
- Kickstarting and monitoring the scheduled action recovery sweep
- Requesting an immediate digest send
"""

from mailflow.web.app import create_app

__all__ = ["create_app"]
