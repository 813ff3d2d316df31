import logging

from waitress import serve

import models
from app import app
from config import Config


if __name__ == "__main__":
    cfg = Config()
    logging.basicConfig(level=cfg.LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    try:
        serve(app, host=cfg.HOST, port=cfg.PORT)
    finally:
        models.close_pool()
