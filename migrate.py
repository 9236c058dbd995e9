"""Schema setup helper.
Creates every table of the dispatch engine in the configured database
(DATABASE_URL, default dispatch.db next to this file).
Run: python migrate.py
"""
import logging

from config import settings
from db import init_db


def main():
    logging.basicConfig(level=settings.LOG_LEVEL)
    init_db()
    logging.getLogger(__name__).info("Database initialized (%s)", settings.DATABASE_URL)


if __name__ == "__main__":
    main()
