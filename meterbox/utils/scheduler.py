#!/usr/bin/env python3
#
# meterbox/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight async background scheduler for periodic tasks.

Each job runs in its own task which exclusively owns the job's run state
(paused flag, in-flight execution, pending run_now waiters). Control calls
from outside (run_now, pause, resume, wake) are messages on the job's command
queue; they never mutate that state directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypedDict

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

# Minimum allowed interval to prevent CPU-pinning tight loops
_MIN_INTERVAL = 1.0

_CMD_RUN = "run"
_CMD_PAUSE = "pause"
_CMD_RESUME = "resume"
_CMD_WAKE = "wake"


class JobStatus(TypedDict):
	"""Status information for a scheduled job."""
	name: str
	interval_seconds: float
	paused: bool
	running: bool  # An execution is in flight
	last_success: str | None  # ISO timestamp of last successful run
	last_attempt: str | None  # ISO timestamp of last attempt (success or failure)
	last_error: str
	run_count: int
	fail_count: int
	skip_count: int  # Ticks skipped while paused


@dataclass
class _Job:
	"""A scheduled repeating job (internal implementation detail)."""
	name: str
	interval: Callable[[], float]
	func: Callable[[], Awaitable[Any]]
	succeeded: Callable[[Any], bool] | None = None
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None  # Per-job execution timeout (None = no limit)
	paused: bool = False
	running: bool = False
	commands: asyncio.Queue | None = None
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	last_error: str = ""
	run_count: int = 0
	fail_count: int = 0
	skip_count: int = 0

	def interval_seconds(self) -> float:
		return max(_MIN_INTERVAL, float(self.interval()))


class Scheduler:
	"""Async scheduler running each job at an interval read on every wait.

	Usage::

		scheduler = Scheduler()
		scheduler.add("wireguard", lambda: settings().wireguard_interval_sec, sampler.run_once)

		# In lifespan:
		await scheduler.start()
		result = await scheduler.run_now("wireguard")
		await scheduler.stop_graceful()
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stop_event: asyncio.Event | None = None
		self._started = False

	@property
	def started(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval: float | Callable[[], float],
		func: Callable[[], Awaitable[Any]],
		*,
		succeeded: Callable[[Any], bool] | None = None,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
		paused: bool = False,
	) -> None:
		"""Register a periodic job.

		Args:
			name: Unique identifier for the job
			interval: Seconds between executions, or a callable returning it
				(re-read before every wait so changes apply without restart)
			func: Async callable to execute; its return value is handed to
				run_now() callers
			succeeded: Classifies a returned value as success (default: any
				return without exception is a success)
			run_on_start: Execute once on start (after initial_delay)
			initial_delay: Seconds to wait before first execution (requires run_on_start=True)
			timeout: Per-execution timeout in seconds (None = no limit)
			paused: Register the job in paused state

		Raises:
			RuntimeError: If scheduler is already running
			ValueError: If name is duplicate, interval is invalid, or initial_delay without run_on_start
		"""
		if self._started:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")

		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")

		if callable(interval):
			interval_fn = interval
		else:
			if interval < _MIN_INTERVAL:
				raise ValueError(f"interval must be ≥ {_MIN_INTERVAL}, got {interval}")
			fixed = float(interval)
			interval_fn = lambda: fixed  # noqa: E731

		if initial_delay < 0:
			raise ValueError(f"initial_delay must be ≥ 0, got {initial_delay}")

		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")

		self._jobs[name] = _Job(
			name=name,
			interval=interval_fn,
			func=func,
			succeeded=succeeded,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
			paused=paused,
		)

	def _get(self, name: str) -> _Job:
		try:
			return self._jobs[name]
		except KeyError:
			raise KeyError(f"Job {name!r} not found") from None

	async def start(self) -> None:
		"""Start all registered jobs as background tasks.

		Must be called from within an async context (running event loop).
		"""
		if self._started:
			return

		self._started = True
		self._stop_event = asyncio.Event()

		for job in self._jobs.values():
			job.commands = asyncio.Queue()
			self._tasks[job.name] = asyncio.create_task(self._run_loop(job), name=f"job-{job.name}")
			_log.info(
				"SCHEDULER job=%s interval=%ds paused=%s started",
				job.name, job.interval_seconds(), job.paused,
			)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Gracefully stop all jobs, waiting up to timeout for clean exit.

		Phase 1: Set stop event; in-flight executions are allowed to finish.
		Phase 2: Cancel any stubborn tasks that didn't stop in time.

		Args:
			timeout: Maximum seconds to wait for tasks to finish gracefully
		"""
		if not self._started:
			return

		self._started = False

		# Signal all loops to stop (they should exit their while loops)
		if self._stop_event is not None:
			self._stop_event.set()

		# Phase 1: Wait for tasks to finish gracefully
		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_log.info("SCHEDULER waiting for %d tasks to finish gracefully", len(pending))
			_done, not_done = await asyncio.wait(pending, timeout=timeout)

			# Phase 2: Force cancel stubborn tasks
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				# Await cancelled tasks to prevent 'Task was destroyed' warnings
				await asyncio.gather(*not_done, return_exceptions=True)

		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	# -- control messages ----------------------------------------------------------

	async def _request(self, job: _Job, command: str) -> Any:
		if not self._started or job.commands is None:
			raise RuntimeError("Scheduler is not running")
		fut = asyncio.get_running_loop().create_future()
		job.commands.put_nowait((command, fut))
		return await fut

	async def run_now(self, name: str) -> Any:
		"""Execute the job now and return its result.

		If an execution is already in flight, waits for it and returns its
		result instead of starting a second one. Paused jobs still run.
		"""
		return await self._request(self._get(name), _CMD_RUN)

	async def pause(self, name: str) -> None:
		"""Stop firing scheduled ticks until resumed."""
		job = self._get(name)
		if not self._started:
			job.paused = True
			return
		await self._request(job, _CMD_PAUSE)

	async def resume(self, name: str) -> None:
		"""Resume ticking; the next tick is one interval from now (no backfill)."""
		job = self._get(name)
		if not self._started:
			job.paused = False
			return
		await self._request(job, _CMD_RESUME)

	def wake(self, name: str | None = None) -> None:
		"""Make waiting jobs re-read their interval now. Safe to call any time."""
		if not self._started:
			return
		jobs = self._jobs.values() if name is None else [self._get(name)]
		for job in jobs:
			if job.commands is not None:
				job.commands.put_nowait((_CMD_WAKE, None))

	# -- job task ---------------------------------------------------------------------

	async def _run_loop(self, job: _Job) -> None:
		"""Wait for the next tick, a command or stop; run without overlap."""
		assert self._stop_event is not None and job.commands is not None, "Bug: _run_loop called without start()"
		loop = asyncio.get_running_loop()
		stop_wait = asyncio.create_task(self._stop_event.wait())
		cmd_get: asyncio.Task | None = None
		exec_task: asyncio.Task | None = None
		waiters: list[asyncio.Future] = []

		# Ticks fire at mark + interval; mark moves on every tick and on resume.
		mark = loop.time()
		first_due: float | None = mark + job.initial_delay if job.run_on_start else None

		def due() -> float:
			return first_due if first_due is not None else mark + job.interval_seconds()

		try:
			while True:
				if cmd_get is None:
					cmd_get = asyncio.create_task(job.commands.get())
				wait_for: set[asyncio.Future] = {stop_wait, cmd_get}
				timeout: float | None = None
				if exec_task is not None:
					wait_for.add(exec_task)
				else:
					timeout = max(0.0, due() - loop.time())

				done, _ = await asyncio.wait(wait_for, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

				if stop_wait in done:
					break

				if exec_task is not None and exec_task in done:
					result, exc = exec_task.result()
					exec_task = None
					job.running = False
					for waiter in waiters:
						if waiter.done():
							continue
						if exc is not None:
							waiter.set_exception(exc)
						else:
							waiter.set_result(result)
					waiters = []
					now = loop.time()
					if first_due is None and due() <= now:
						# A tick fell inside the run; skip it rather than burst
						_log.debug("SCHEDULER job=%s tick skipped (run in progress)", job.name)
						mark = now

				if cmd_get in done:
					command, fut = cmd_get.result()
					cmd_get = None
					if command == _CMD_RUN:
						waiters.append(fut)
						if exec_task is None:
							exec_task = self._spawn(job)
						else:
							_log.debug("SCHEDULER job=%s run_now joined in-flight run", job.name)
					elif command == _CMD_PAUSE:
						if not job.paused:
							job.paused = True
							_log.info("SCHEDULER job=%s paused", job.name)
						fut.set_result(None)
					elif command == _CMD_RESUME:
						if job.paused:
							job.paused = False
							mark = loop.time()
							_log.info("SCHEDULER job=%s resumed", job.name)
						fut.set_result(None)
					# _CMD_WAKE: nothing to do, the next wait re-reads the interval
					continue

				if exec_task is None and loop.time() >= due():
					first_due = None
					mark = loop.time()
					if job.paused:
						job.skip_count += 1
						_log.debug("SCHEDULER job=%s paused, tick skipped", job.name)
					else:
						exec_task = self._spawn(job)

			# Stop requested: let an in-flight execution finish.
			if exec_task is not None:
				result, exc = await exec_task
				exec_task = None
				for waiter in waiters:
					if not waiter.done():
						if exc is not None:
							waiter.set_exception(exc)
						else:
							waiter.set_result(result)
				waiters = []

		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)
		finally:
			job.running = False
			if cmd_get is not None and cmd_get.done() and not cmd_get.cancelled():
				_command, fut = cmd_get.result()
				if fut is not None and not fut.done():
					fut.cancel()
			for task in (stop_wait, cmd_get, exec_task):
				if task is not None and not task.done():
					task.cancel()
			for waiter in waiters:
				if not waiter.done():
					waiter.cancel()
			# Commands that arrived after stop are answered as cancelled.
			while not job.commands.empty():
				_command, fut = job.commands.get_nowait()
				if fut is not None and not fut.done():
					fut.cancel()

	def _spawn(self, job: _Job) -> asyncio.Task:
		job.running = True
		return asyncio.create_task(self._execute(job), name=f"run-{job.name}")

	async def _execute(self, job: _Job) -> tuple[Any, BaseException | None]:
		"""Execute a single job with error handling and optional timeout.

		Returns:
			(result, None) on completion, (None, exc) if it raised or timed out
		"""
		job.last_attempt = datetime.now(timezone.utc)
		try:
			_log.debug("SCHEDULER job=%s executing", job.name)

			if job.timeout is not None:
				result = await asyncio.wait_for(job.func(), timeout=job.timeout)
			else:
				result = await job.func()
		except asyncio.TimeoutError as exc:
			job.fail_count += 1
			job.last_error = f"timed out after {job.timeout:.1f}s"
			_log.error("SCHEDULER job=%s timed out after %.1fs (fail #%d)", job.name, job.timeout, job.fail_count)
			return None, exc
		except Exception as exc:
			job.fail_count += 1
			job.last_error = f"{type(exc).__name__}: {exc}"
			_log.exception("SCHEDULER job=%s failed (fail #%d)", job.name, job.fail_count)
			return None, exc

		if job.succeeded is not None and not job.succeeded(result):
			job.fail_count += 1
			job.last_error = str(getattr(result, "error", "") or "failed")
			_log.warning("SCHEDULER job=%s run reported failure (fail #%d)", job.name, job.fail_count)
		else:
			job.last_success = job.last_attempt
			job.last_error = ""
			job.run_count += 1
			_log.debug("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
		return result, None

	def get_status(self) -> list[JobStatus]:
		"""Return status of all jobs (for monitoring/API)."""
		return [
			{
				"name": job.name,
				"interval_seconds": job.interval_seconds(),
				"paused": job.paused,
				"running": job.running,
				"last_success": job.last_success.isoformat() if job.last_success else None,
				"last_attempt": job.last_attempt.isoformat() if job.last_attempt else None,
				"last_error": job.last_error,
				"run_count": job.run_count,
				"fail_count": job.fail_count,
				"skip_count": job.skip_count,
			}
			for job in self._jobs.values()
		]
