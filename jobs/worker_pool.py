"""
Fixed-size pool of RQ workers sharing one start-rate window.

Each worker is its own process (and RQ forks a work horse per job), so a
crashing job never takes a sibling down. Concurrency is the number of worker
processes; the start rate is enforced through CapacityWindow in Redis.
"""

import logging
import multiprocessing
import os
import time
import uuid
from typing import Callable, List, Optional

from rq import Queue, Worker

from jobs.capacity import CapacityWindow
from jobs.queue import get_redis_client

logger = logging.getLogger(__name__)

RESTART_DELAY_SECONDS = 2


class RateLimitedWorker(Worker):
    """RQ worker that reserves a start slot before taking a job off the queue."""

    def __init__(self, *args, capacity: Optional[CapacityWindow] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.capacity = capacity

    def dequeue_job_and_maintain_ttl(self, *args, **kwargs):
        if self.capacity is None:
            return super().dequeue_job_and_maintain_ttl(*args, **kwargs)

        token = self.capacity.acquire(f"{self.name}:{uuid.uuid4().hex}")
        result = None
        try:
            result = super().dequeue_job_and_maintain_ttl(*args, **kwargs)
        finally:
            if result is None:
                self.capacity.release(token)
        # Re-score at the actual start time. A reservation that aged out while
        # the queue was idle no longer counts, so take a fresh slot.
        if result is not None and not self.capacity.touch(token):
            self.capacity.acquire(token)
        return result


def build_worker(config, connection, index: int = 0, worker_class=RateLimitedWorker):
    queue = Queue(config.queue_name, connection=connection)
    capacity = CapacityWindow(
        connection,
        config.queue_name,
        max_starts=config.rate_limit_max_starts,
        window_seconds=config.rate_limit_window_seconds,
    )
    # unique per process; RQ refuses a name that is still registered
    name = f"{config.worker_id or 'worker'}-{index}-{os.getpid()}"
    return worker_class([queue], connection=connection, name=name, capacity=capacity)


def run_worker(config, index: int) -> None:
    """Process target: one worker with its own Redis connection."""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    connection = get_redis_client(config.redis_url)
    worker = build_worker(config, connection, index)
    logger.info(f"👷 Worker {worker.name} ready to process jobs on '{config.queue_name}'")
    worker.work(with_scheduler=True)


class WorkerPool:
    """Start ``config.concurrency`` workers and keep them running."""

    def __init__(self, config, target: Callable = run_worker, process_factory=multiprocessing.Process):
        if config.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.config = config
        self._target = target
        self._process_factory = process_factory
        self.processes: List = []
        self._stopping = False

    def _spawn(self, index: int):
        process = self._process_factory(
            target=self._target,
            args=(self.config, index),
            name=f"sheet-worker-{index}",
            daemon=False,
        )
        process.start()
        return process

    def start(self) -> None:
        logger.info(
            f"🚀 Starting {self.config.concurrency} worker(s), "
            f"max {self.config.rate_limit_max_starts} starts per {self.config.rate_limit_window_seconds}s"
        )
        self.processes = [self._spawn(i) for i in range(self.config.concurrency)]

    def supervise_once(self) -> int:
        """Restart workers that exited unexpectedly. Returns how many were restarted."""
        restarted = 0
        for index, process in enumerate(self.processes):
            if self._stopping or process.is_alive():
                continue
            logger.warning(f"⚠️ Worker {index} exited with code {process.exitcode}, restarting")
            self.processes[index] = self._spawn(index)
            restarted += 1
        return restarted

    def run_forever(self, poll_seconds: float = RESTART_DELAY_SECONDS) -> None:
        try:
            while not self._stopping:
                self.supervise_once()
                time.sleep(poll_seconds)
        except KeyboardInterrupt:
            logger.info("🛑 Worker pool stopped by user")
        finally:
            self.stop()

    def stop(self, timeout: float = 10) -> None:
        self._stopping = True
        for process in self.processes:
            if process.is_alive():
                process.terminate()
        for process in self.processes:
            process.join(timeout)
