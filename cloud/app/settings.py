from __future__ import annotations
import os

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ["REDIS_URL"]
QUEUE_NAME = os.environ.get("QUEUE_NAME", "flowci:queue")
LEASE_SECONDS = int(os.environ.get("LEASE_SECONDS", "3600"))
CLAIM_WAIT_SECONDS = int(os.environ.get("CLAIM_WAIT_SECONDS", "5"))
DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "5"))
