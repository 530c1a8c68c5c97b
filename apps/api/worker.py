"""RQ worker process entrypoint for generation tracking jobs."""

import logging

from rq import Worker

from config import settings
from services.generation_queue import GENERATION_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO))
    worker = Worker([GENERATION_QUEUE_NAME], connection=get_redis_connection())
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
