"""
Entry point for the FinLock card control backend.
Loads .env, configures logging and exposes the FastAPI app.
Supervisor runs: uvicorn backend.server:app --host 0.0.0.0 --port 8001
Production runs: gunicorn -c gunicorn_conf.py backend.server:app
"""

import sys
import os
import logging

# Ensure the project root is on the Python path
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

# Load .env from BOTH backend dir and project root (backend first, root overrides)
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))
load_dotenv(os.path.join(_project_root, '.env'), override=True)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# Config reads the environment at import time, so import after load_dotenv
from webhook_server import create_app  # noqa: E402

app = create_app()
logger.info("FinLock card control server loaded")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8001")))
