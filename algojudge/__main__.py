import logging
import os

import uvicorn

from algojudge.main import app

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=os.environ.get("OJ_HOST", "0.0.0.0"), port=int(os.environ.get("OJ_PORT", 8000)))
