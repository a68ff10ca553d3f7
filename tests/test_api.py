"""HTTP API tests against an engine with fake collectors."""

import pytest
from fastapi.testclient import TestClient

from conftest import T0, FakeClock, FakeCollector
from meterbox.core.engine import Engine
from meterbox.main import create_app
from meterbox.utils.rate_limit import limiter

API = "/api/traffic"
WINDOW = {"start": T0, "end": T0 + 3600}


@pytest.fixture()
def db_path(tmp_path):
	return tmp_path / "meterbox.db"


@pytest.fixture()
def api_clock():
	return FakeClock()


@pytest.fixture()
def wg():
	return FakeCollector("wireguard")


@pytest.fixture()
def client(db_path, api_clock, wg):
	limiter.reset()
	engine = Engine(db_path, [wg], clock=api_clock, run_on_start=False)
	with TestClient(create_app(engine=engine)) as c:
		yield c


def _two_ticks(client, wg, clock):
	wg.set("peerA", 1000, 2000)
	first = client.post(f"{API}/run/wireguard")
	clock.advance(60)
	wg.set("peerA", 1500, 2600)
	second = client.post(f"{API}/run/wireguard")
	return first, second


class TestSampling:

	def test_manual_runs_feed_reports(self, client, wg, api_clock):
		first, second = _two_ticks(client, wg, api_clock)
		assert first.status_code == 200
		assert first.json()["data"]["inserted_count"] == 1
		assert second.json()["data"]["ok"] is True

		r = client.get(f"{API}/totals", params={"source": "wireguard", "identity": "peerA", **WINDOW})
		assert r.status_code == 200
		data = r.json()["data"]
		assert (data["uplink"], data["downlink"], data["total"]) == (500, 600, 1100)

		r = client.get(f"{API}/top", params={"source": "wireguard", "n": 5, **WINDOW})
		assert [row["identity"] for row in r.json()["data"]] == ["peerA"]

		r = client.get(f"{API}/series", params={"source": "wireguard", "bucket_width": 3600, **WINDOW})
		points = r.json()["data"]
		assert len(points) == 1 and points[0]["samples"] == 2

	def test_last_seen(self, client, wg, api_clock):
		_two_ticks(client, wg, api_clock)
		r = client.get(f"{API}/last-seen", params={"source": "wireguard", "threshold_bytes": 0})
		assert r.status_code == 200
		assert r.json()["data"] == [{"source": "wireguard", "identity": "peerA", "ts": T0 + 60}]

		r = client.get(f"{API}/last-seen", params={"source": "wireguard", "threshold_bytes": 2000})
		assert r.json()["data"] == []
		assert client.get(f"{API}/last-seen", params={"source": "wireguard", "threshold_bytes": -1}).status_code == 422

	def test_compacted_buckets_are_listed(self, db_path, api_clock, wg):
		limiter.reset()
		engine = Engine(db_path, [wg], clock=api_clock, run_on_start=False)
		with TestClient(create_app(engine=engine)) as client:
			api_clock.now = T0 - 10 * 86400
			_two_ticks(client, wg, api_clock)
			api_clock.now = T0
			assert engine.retention.aggregate(7).samples_deleted == 2

			r = client.get(f"{API}/buckets", params={"source": "wireguard"})
			assert r.status_code == 200
			rows = r.json()["data"]
			assert [(b["identity"], b["uplink_total"], b["downlink_total"], b["sample_count"]) for b in rows] == [
				("peerA", 500, 600, 2),
			]
			assert client.get(f"{API}/buckets", params={"identity": "nobody"}).json()["data"] == []

	def test_run_history_newest_first(self, client, wg, api_clock):
		_two_ticks(client, wg, api_clock)
		r = client.get(f"{API}/runs", params={"source": "wireguard"})
		runs = r.json()["data"]
		assert [run["ts"] for run in runs] == [T0 + 60, T0]

	def test_collector_failure_is_reported_in_the_record(self, client, wg):
		from meterbox.errors import CollectorUnavailable

		wg.error = CollectorUnavailable("wg: interface down")
		r = client.post(f"{API}/run/wireguard")
		assert r.status_code == 200
		assert r.json()["data"]["ok"] is False
		assert "interface down" in r.json()["data"]["error"]

	def test_unconfigured_source_is_404(self, client):
		assert client.post(f"{API}/run/proxy").status_code == 404

	def test_unknown_source_is_422(self, client):
		assert client.post(f"{API}/run/dns").status_code == 422
		assert client.get(f"{API}/top", params={"source": "dns", **WINDOW}).status_code == 422

	def test_inverted_window_is_400(self, client):
		r = client.get(f"{API}/series", params={"source": "wireguard", "start": T0 + 10, "end": T0})
		assert r.status_code == 400


class TestQuota:

	def test_limit_lifecycle(self, client, wg, api_clock):
		r = client.put(f"{API}/quota/wireguard/peerA", json={"period_type": "total", "limit_bytes": 1000})
		assert r.status_code == 200

		r = client.get(f"{API}/quota/wireguard/peerA")
		assert r.status_code == 200
		assert r.json()["limit_bytes"] == 1000

		_two_ticks(client, wg, api_clock)
		state = client.get(f"{API}/quota/wireguard/peerA").json()["data"]
		assert state["consumed_bytes"] == 1100
		assert state["exceeded"] is True
		assert state["remaining_bytes"] == 0

		listed = client.get(f"{API}/quota", params={"source": "wireguard"}).json()["data"]
		assert [s["identity"] for s in listed] == ["peerA"]

		assert client.delete(f"{API}/quota/wireguard/peerA").status_code == 200
		assert client.delete(f"{API}/quota/wireguard/peerA").status_code == 404
		assert client.get(f"{API}/quota/wireguard/peerA").status_code == 404

	@pytest.mark.parametrize(
		"payload",
		[
			{"period_type": "total", "limit_bytes": 10, "reset_day": 5},
			{"period_type": "monthly", "limit_bytes": -1},
			{"period_type": "weekly", "limit_bytes": 10},
			{"period_type": "monthly", "limit_bytes": 10, "reset_day": 32},
		],
	)
	def test_invalid_limit_is_422(self, client, payload):
		assert client.put(f"{API}/quota/wireguard/peerA", json=payload).status_code == 422


class TestControl:

	def test_pause_and_resume_show_in_status(self, client):
		assert client.post(f"{API}/pause/wireguard").status_code == 200
		jobs = {j["name"]: j for j in client.get(f"{API}/status").json()["data"]["jobs"]}
		assert jobs["wireguard"]["paused"] is True
		assert client.get(f"{API}/settings").json()["data"]["wireguard_paused"] is True

		assert client.post(f"{API}/resume/wireguard").status_code == 200
		jobs = {j["name"]: j for j in client.get(f"{API}/status").json()["data"]["jobs"]}
		assert jobs["wireguard"]["paused"] is False

	def test_paused_source_still_runs_on_demand(self, client, wg):
		client.post(f"{API}/pause/wireguard")
		wg.set("peerA", 1, 1)
		r = client.post(f"{API}/run/wireguard")
		assert r.json()["data"]["inserted_count"] == 1

	def test_status_lists_jobs_and_db(self, client):
		data = client.get(f"{API}/status").json()["data"]
		assert data["running"] is True
		assert {j["name"] for j in data["jobs"]} == {"wireguard", "retention", "sqlite-maintenance", "sqlite-integrity"}
		assert data["db"]["sample_count"] == 0

	def test_prune_now(self, client):
		r = client.post(f"{API}/prune")
		assert r.status_code == 200
		data = r.json()["data"]
		assert data["deleted_count"] == 0
		assert data["cutoff"] == T0 - 90 * 86400

	def test_heavy_endpoints_are_rate_limited(self, client):
		codes = [client.post(f"{API}/prune").status_code for _ in range(11)]
		assert codes[:10] == [200] * 10
		assert codes[10] == 429

	def test_request_id_is_echoed(self, client):
		r = client.get(f"{API}/status", headers={"X-Request-ID": "trace-123"})
		assert r.headers["X-Request-ID"] == "trace-123"
		assert client.get(f"{API}/status").headers.get("X-Request-ID")


class TestSettings:

	def test_update_is_applied_and_persisted(self, db_path, api_clock, wg):
		limiter.reset()
		engine = Engine(db_path, [wg], clock=api_clock, run_on_start=False)
		with TestClient(create_app(engine=engine)) as client:
			r = client.patch(f"{API}/settings", json={"wireguard_interval_sec": 30, "retention_days": 10})
			assert r.status_code == 200
			assert r.json()["data"]["wireguard_interval_sec"] == 30

			jobs = {j["name"]: j for j in client.get(f"{API}/status").json()["data"]["jobs"]}
			assert jobs["wireguard"]["interval_seconds"] == 30

		reopened = Engine(db_path, [], run_on_start=False)
		try:
			current = reopened.settings.current()
			assert current.wireguard_interval_sec == 30
			assert current.retention_days == 10
			assert current.proxy_interval_sec == 120
		finally:
			reopened.store.close()

	def test_empty_update_is_400(self, client):
		assert client.patch(f"{API}/settings", json={}).status_code == 400

	@pytest.mark.parametrize(
		"payload",
		[{"bogus": 1}, {"retention_days": 0}, {"collector_timeout_sec": 0}],
	)
	def test_invalid_update_is_422(self, client, payload):
		assert client.patch(f"{API}/settings", json=payload).status_code == 422
		assert client.get(f"{API}/settings").json()["data"]["retention_days"] == 90
