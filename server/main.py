"""Entry point: starts the NiceGUI server with the timeline REST API mounted."""

import logging
import logging.handlers
import os

from nicegui import app, ui

from api import router
from database import init_db
from runtime import init_runtime, shutdown_runtime

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "timeline.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("timeline")

# Quiet noisy libraries
logging.getLogger("watchfiles").setLevel(logging.WARNING)
logging.getLogger("multipart").setLevel(logging.WARNING)

app.include_router(router)

# Tables first, then the scheduler and job sweeper; stop them on the way out
app.on_startup(init_db)
app.on_startup(init_runtime)
app.on_shutdown(shutdown_runtime)

ui.run(
    title="Movement Timeline",
    port=int(os.environ.get("PORT", "8080")),
    show=False,
    reload=False,
)
