"""Tests for the async job scheduler.

The smallest interval is one second, so timing-based tests sleep slightly
longer than that.
"""

import asyncio

import pytest

from meterbox.utils.scheduler import Scheduler


class Counter:
	"""Job body that counts calls and can be held open by a gate."""

	def __init__(self) -> None:
		self.calls = 0
		self.gate: asyncio.Event | None = None

	async def __call__(self) -> int:
		self.calls += 1
		if self.gate is not None:
			await self.gate.wait()
		return self.calls


class TestRegistration:

	def test_duplicate_name_rejected(self):
		scheduler = Scheduler()
		scheduler.add("job", 10, Counter())
		with pytest.raises(ValueError):
			scheduler.add("job", 10, Counter())

	def test_interval_below_minimum_rejected(self):
		with pytest.raises(ValueError):
			Scheduler().add("job", 0.1, Counter())

	def test_initial_delay_requires_run_on_start(self):
		with pytest.raises(ValueError):
			Scheduler().add("job", 10, Counter(), initial_delay=1.0)

	def test_unknown_job(self):
		async def scenario():
			scheduler = Scheduler()
			await scheduler.start()
			try:
				with pytest.raises(KeyError):
					await scheduler.run_now("missing")
			finally:
				await scheduler.stop_graceful()

		asyncio.run(scenario())


class TestRunNow:

	def test_returns_result(self):
		async def scenario():
			job = Counter()
			scheduler = Scheduler()
			scheduler.add("job", 3600, job)
			await scheduler.start()
			try:
				assert await scheduler.run_now("job") == 1
				assert await scheduler.run_now("job") == 2
			finally:
				await scheduler.stop_graceful()
			return scheduler.get_status()[0]

		status = asyncio.run(scenario())
		assert status["run_count"] == 2
		assert status["fail_count"] == 0
		assert status["last_success"] is not None

	def test_concurrent_requests_coalesce(self):
		async def scenario():
			job = Counter()
			job.gate = asyncio.Event()
			scheduler = Scheduler()
			scheduler.add("job", 3600, job)
			await scheduler.start()
			try:
				first = asyncio.create_task(scheduler.run_now("job"))
				await asyncio.sleep(0.05)
				assert scheduler.get_status()[0]["running"] is True
				second = asyncio.create_task(scheduler.run_now("job"))
				await asyncio.sleep(0.05)
				job.gate.set()
				results = await asyncio.gather(first, second)
			finally:
				await scheduler.stop_graceful()
			return job.calls, results

		calls, results = asyncio.run(scenario())
		assert calls == 1
		assert results == [1, 1]

	def test_failure_reaches_caller_but_job_stays_scheduled(self):
		async def scenario():
			attempts = []

			async def flaky():
				attempts.append(1)
				if len(attempts) == 1:
					raise RuntimeError("upstream hiccup")
				return "ok"

			scheduler = Scheduler()
			scheduler.add("job", 3600, flaky)
			await scheduler.start()
			try:
				with pytest.raises(RuntimeError):
					await scheduler.run_now("job")
				assert await scheduler.run_now("job") == "ok"
			finally:
				await scheduler.stop_graceful()
			return scheduler.get_status()[0]

		status = asyncio.run(scenario())
		assert status["fail_count"] == 1
		assert status["run_count"] == 1
		assert status["last_error"] == ""

	def test_reported_failure_counts_as_failure(self):
		async def scenario():
			async def returns_error():
				return {"error": "collector down"}

			scheduler = Scheduler()
			scheduler.add("job", 3600, returns_error, succeeded=lambda r: not r["error"])
			await scheduler.start()
			try:
				await scheduler.run_now("job")
			finally:
				await scheduler.stop_graceful()
			return scheduler.get_status()[0]

		status = asyncio.run(scenario())
		assert status["fail_count"] == 1
		assert status["run_count"] == 0


class TestPauseAndIntervals:

	def test_paused_job_skips_ticks_but_honors_run_now(self):
		async def scenario():
			job = Counter()
			scheduler = Scheduler()
			scheduler.add("job", 1, job, paused=True)
			await scheduler.start()
			try:
				await asyncio.sleep(1.3)
				ticked_while_paused = job.calls
				await scheduler.run_now("job")
			finally:
				await scheduler.stop_graceful()
			return ticked_while_paused, job.calls, scheduler.get_status()[0]

		ticked, calls, status = asyncio.run(scenario())
		assert ticked == 0
		assert calls == 1
		assert status["paused"] is True
		assert status["skip_count"] >= 1

	def test_resume_does_not_backfill(self):
		async def scenario():
			job = Counter()
			scheduler = Scheduler()
			scheduler.add("job", 1, job)
			await scheduler.start()
			try:
				await scheduler.pause("job")
				await asyncio.sleep(2.2)
				await scheduler.resume("job")
				await asyncio.sleep(0.3)
				right_after_resume = job.calls
				await asyncio.sleep(1.0)
			finally:
				await scheduler.stop_graceful()
			return right_after_resume, job.calls

		right_after_resume, later = asyncio.run(scenario())
		assert right_after_resume == 0
		assert later == 1

	def test_interval_change_applies_after_wake(self):
		async def scenario():
			job = Counter()
			interval = {"seconds": 3600}
			scheduler = Scheduler()
			scheduler.add("job", lambda: interval["seconds"], job)
			await scheduler.start()
			try:
				await asyncio.sleep(0.2)
				interval["seconds"] = 1
				scheduler.wake("job")
				await asyncio.sleep(1.3)
			finally:
				await scheduler.stop_graceful()
			return job.calls, scheduler.get_status()[0]["interval_seconds"]

		calls, interval_seconds = asyncio.run(scenario())
		assert calls >= 1
		assert interval_seconds == 1

	def test_pause_before_start_is_applied(self):
		async def scenario():
			scheduler = Scheduler()
			scheduler.add("job", 1, Counter())
			await scheduler.pause("job")
			return scheduler.get_status()[0]["paused"]

		assert asyncio.run(scenario()) is True


class TestShutdown:

	def test_in_flight_run_finishes_on_stop(self):
		async def scenario():
			finished = []

			async def slow():
				await asyncio.sleep(0.2)
				finished.append(True)
				return "done"

			scheduler = Scheduler()
			scheduler.add("job", 3600, slow)
			await scheduler.start()
			pending = asyncio.create_task(scheduler.run_now("job"))
			await asyncio.sleep(0.05)
			await scheduler.stop_graceful(timeout=2.0)
			return finished, await pending

		finished, result = asyncio.run(scenario())
		assert finished == [True]
		assert result == "done"

	def test_run_now_after_stop_is_refused(self):
		async def scenario():
			scheduler = Scheduler()
			scheduler.add("job", 3600, Counter())
			await scheduler.start()
			await scheduler.stop_graceful()
			with pytest.raises(RuntimeError):
				await scheduler.run_now("job")

		asyncio.run(scenario())
