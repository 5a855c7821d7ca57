"""
Gunicorn settings the service depends on
"""

import gunicorn_conf
from config import Config


class TestGunicornSettings:
    def test_uvicorn_workers_without_preload(self):
        assert gunicorn_conf.worker_class == "uvicorn.workers.UvicornWorker"
        assert gunicorn_conf.preload_app is False

    def test_timeout_covers_unlock_then_relock(self):
        assert gunicorn_conf.timeout > 2 * Config.PROVIDER_TIMEOUT_SECONDS

    def test_lifecycle_hooks_log_through_server(self):
        messages = []

        class Log:
            def info(self, message):
                messages.append(message)

        class Server:
            log = Log()

        class Worker:
            pid = 4242

        gunicorn_conf.post_fork(Server(), Worker())
        gunicorn_conf.worker_exit(Server(), Worker())

        assert len(messages) == 2
        assert all("4242" in m for m in messages)
