"""RQ worker for queued jobs (password reset mail).

Run with `python worker.py`; it listens on the queues given on the command
line, `default` otherwise.
"""
import sys

import redis

from main import app, rq

if __name__ == '__main__':
    listen = sys.argv[1:] or ['default']
    # Jobs render templates and use Flask-Mail, so they need the app context.
    with app.app_context():
        try:
            worker = rq.get_worker(*listen)
            worker.work()
        except redis.exceptions.ConnectionError as e:
            print(f"Redis unreachable at {app.config['RQ_REDIS_URL']}: {e}")
            sys.exit(1)
