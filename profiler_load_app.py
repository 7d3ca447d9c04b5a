#!/usr/bin/env python3
"""
Profiler Test App
Synthetic CPU, memory and latency load behind plain-text HTTP endpoints,
for exercising external profilers and monitoring agents.
"""
import asyncio
import logging
import math
import os
import time
from concurrent.futures import Executor, ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from contextlib import asynccontextmanager
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
import uvicorn

# ==============================
# CONFIGURATION
# ==============================

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")
CPU_PROCESSES = int(os.getenv("CPU_PROCESSES", str(max(2, os.cpu_count() or 2))))

# Workload sizes are fixed; they are not exposed over HTTP.
PRIME_LIMIT = 1_000_000
STRING_COUNT = 1_000_000
MEMORY_HOLD_SECONDS = 1.0
QUERY_DELAY_SECONDS = 3.0
QUERY_ROW_COUNT = 10_000

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)

_cpu_executor: Optional[ProcessPoolExecutor] = None
_cpu_executor_lock = Lock()

# ==============================
# WORKLOADS
# ==============================

def prime_sum(limit: int = PRIME_LIMIT) -> int:
    """Sum every prime below *limit*, testing each candidate by trial division.

    The result only exists so the loop has an observable output; for the
    default limit it is 37,550,402,023.
    """
    total = 0
    for i in range(2, limit):
        for j in range(2, math.isqrt(i) + 1):
            if i % j == 0:
                break
        else:
            total += i
    return total


def accumulate_strings(count: int = STRING_COUNT, hold: float = MEMORY_HOLD_SECONDS) -> int:
    """Build *count* text records, count those containing "999", then hold them"""
    records: List[str] = []
    for i in range(count):
        records.append(f"Memory string {i} with some additional text to make it larger in memory")

    matches = sum(1 for record in records if "999" in record)

    # records stay referenced until the hold elapses
    if hold > 0:
        time.sleep(hold)
    return matches


async def simulate_slow_query(delay: float = QUERY_DELAY_SECONDS, rows: int = QUERY_ROW_COUNT) -> int:
    """Simulate database latency, then scan a synthetic result set"""
    await asyncio.sleep(delay)

    results = [f"Row {i}" for i in range(rows)]
    return sum(1 for row in results if "9" in row)

# ==============================
# EXECUTION HELPERS
# ==============================

def get_cpu_executor() -> ProcessPoolExecutor:
    """Lazily create/reuse the process pool for CPU work"""
    global _cpu_executor
    if _cpu_executor is None:
        with _cpu_executor_lock:
            if _cpu_executor is None:
                logger.info("Starting CPU worker pool with %d processes", CPU_PROCESSES)
                _cpu_executor = ProcessPoolExecutor(max_workers=CPU_PROCESSES)
    return _cpu_executor


def shutdown_cpu_executor() -> None:
    """Tear down the process pool, waiting for in-flight work"""
    global _cpu_executor
    with _cpu_executor_lock:
        executor, _cpu_executor = _cpu_executor, None
    if executor is not None:
        logger.info("Shutting down CPU worker pool")
        executor.shutdown(wait=True)


def discard_cpu_executor(executor: ProcessPoolExecutor) -> None:
    """Drop a broken pool so the next request starts a fresh one"""
    global _cpu_executor
    with _cpu_executor_lock:
        if _cpu_executor is not executor:
            return
        _cpu_executor = None
    logger.warning("CPU worker pool is broken, discarding it")
    executor.shutdown(wait=False)


async def run_cpu_workload(executor: Optional[Executor] = None) -> int:
    """Run the prime sum off the event loop, in a worker process by default"""
    loop = asyncio.get_running_loop()
    pool = executor if executor is not None else get_cpu_executor()
    try:
        return await loop.run_in_executor(pool, prime_sum, PRIME_LIMIT)
    except BrokenProcessPool:
        # a worker died (e.g. OOM kill); this request fails, the next one gets a new pool
        if executor is None:
            discard_cpu_executor(pool)
        raise


async def run_memory_workload() -> int:
    """Run the string accumulation in a thread so its buffer lives in this process"""
    return await asyncio.to_thread(accumulate_strings, STRING_COUNT, MEMORY_HOLD_SECONDS)


async def run_query_workload() -> int:
    """Run the simulated query on the event loop"""
    return await simulate_slow_query(QUERY_DELAY_SECONDS, QUERY_ROW_COUNT)


async def _settle(name: str, task: "asyncio.Future[Any]") -> Tuple[str, Any, Optional[Exception]]:
    """Await *task*, returning its outcome instead of raising"""
    try:
        return name, await task, None
    except Exception as exc:
        return name, None, exc


async def gather_task_results(tasks: Dict[str, "asyncio.Future[Any]"]) -> Dict[str, Any]:
    """Await all tasks and bucket the results.

    Every task runs to completion even when a sibling fails; afterwards the
    first failure observed (in completion order) is re-raised.
    """
    results: Dict[str, Any] = {}
    first_error: Optional[Exception] = None

    for settled in asyncio.as_completed([_settle(name, task) for name, task in tasks.items()]):
        name, value, error = await settled
        if error is None:
            results[name] = value
            continue
        logger.error("Workload %r failed: %r", name, error)
        if first_error is None:
            first_error = error

    if first_error is not None:
        raise first_error
    return {name: results[name] for name in tasks}


async def run_all(executor: Optional[Executor] = None) -> Dict[str, Any]:
    """Run the CPU, memory and query workloads concurrently and join on all three"""
    pending_tasks: Dict[str, asyncio.Task] = {
        "cpu": asyncio.create_task(run_cpu_workload(executor)),
        "memory": asyncio.create_task(run_memory_workload()),
        "query": asyncio.create_task(run_query_workload()),
    }
    return await gather_task_results(pending_tasks)


def timed_response(banner: str, summary: str, start: float) -> PlainTextResponse:
    """Render the banner plus the elapsed-time line"""
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    logger.info("%s in %dms", summary, elapsed_ms)
    return PlainTextResponse(f"{banner}\n{summary} in {elapsed_ms}ms")

# ==============================
# APPLICATION
# ==============================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Profiler Test App starting (pid %d)", os.getpid())
    try:
        yield
    finally:
        shutdown_cpu_executor()
        logger.info("Profiler Test App stopped")


app = FastAPI(title="Profiler Test App", lifespan=lifespan)


@app.exception_handler(MemoryError)
async def out_of_memory(request: Request, exc: MemoryError):
    logger.exception("Out of memory while serving %s", request.url.path, exc_info=exc)
    return PlainTextResponse(f"{request.url.path} failed: out of memory", status_code=500)

# ==============================
# ENDPOINTS
# ==============================

@app.get("/", response_class=PlainTextResponse)
async def index():
    """Liveness check"""
    return "Profiler Test App is running!"


@app.get("/cpu-intensive")
async def cpu_intensive():
    start = time.perf_counter()
    await run_cpu_workload()
    return timed_response("Starting CPU-intensive operation...", "CPU-intensive operation completed", start)


@app.get("/memory-intensive")
async def memory_intensive():
    start = time.perf_counter()
    await run_memory_workload()
    return timed_response("Starting memory-intensive operation...", "Memory-intensive operation completed", start)


@app.get("/slow-query")
async def slow_query():
    start = time.perf_counter()
    await run_query_workload()
    return timed_response("Starting slow query simulation...", "Slow query completed", start)


@app.get("/load-test")
async def load_test():
    """Run all three workloads in parallel"""
    start = time.perf_counter()
    await run_all()
    return timed_response("Starting load test with multiple operations...", "Load test completed", start)


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL.upper(), format=LOG_FORMAT)
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
