"""
Gunicorn Configuration for the FinLock card control backend
Each uvicorn worker runs its own sweep scheduler and expiry listener; session
closes are compare-and-set, so overlapping sweeps from several workers are safe.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"

workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"

# An authorize call makes at most two provider round trips (unfreeze, then freeze on a lost race)
timeout = int(float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10")) * 2) + 30
# Shutdown waits for the scheduler to finish an in-flight sweep
graceful_timeout = int(os.getenv("SWEEP_MISFIRE_GRACE_SECONDS", "30"))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

proc_name = "finlock_card_control"

# DO NOT preload app - each worker needs its own event loop, Redis client and HTTP session
preload_app = False


def post_fork(server, worker):
    server.log.info(f"🔧 Worker {worker.pid} started (own sweep scheduler and expiry listener)")


def worker_exit(server, worker):
    server.log.info(f"👋 Worker {worker.pid} exited; open windows stay covered by the other workers' sweeps")
