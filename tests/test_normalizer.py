"""Tests for cumulative counter -> delta normalization."""

import pytest

from meterbox.collectors.base import RawCounters
from meterbox.core.normalizer import Delta, normalize, normalize_channel


class TestNormalizeChannel:

	def test_increase_yields_difference(self):
		assert normalize_channel(1000, 1500) == (500, False)

	def test_unchanged_counter_yields_zero(self):
		assert normalize_channel(42, 42) == (0, False)

	def test_decrease_is_a_reset_and_counts_current_value(self):
		assert normalize_channel(1500, 50) == (50, True)

	def test_reset_to_zero(self):
		assert normalize_channel(1500, 0) == (0, True)


class TestNormalize:

	def test_first_observation_is_baseline_only(self):
		delta = normalize(None, RawCounters(1000, 2000))
		assert delta == Delta(0, 0)
		assert not delta.reset

	def test_normal_tick(self):
		"""Raw (1000, 2000) -> (1500, 2600) stores (500, 600)."""
		delta = normalize(RawCounters(1000, 2000), RawCounters(1500, 2600))
		assert (delta.uplink, delta.downlink) == (500, 600)
		assert delta.total == 1100
		assert not delta.reset

	def test_service_restart(self):
		"""Raw (1500, 2600) -> (50, 80) stores (50, 80) flagged as reset."""
		delta = normalize(RawCounters(1500, 2600), RawCounters(50, 80))
		assert (delta.uplink, delta.downlink) == (50, 80)
		assert delta.reset

	def test_channels_reset_independently(self):
		delta = normalize(RawCounters(1500, 2600), RawCounters(100, 3000))
		assert delta.uplink == 100 and delta.uplink_reset
		assert delta.downlink == 400 and not delta.downlink_reset
		assert delta.reset

	def test_sum_of_deltas_equals_counter_growth(self):
		ups = [0, 100, 250, 250, 1000, 4096]
		downs = [10, 10, 500, 900, 901, 20000]
		previous = None
		total_up = total_down = 0
		for up, down in zip(ups, downs):
			current = RawCounters(up, down)
			delta = normalize(previous, current)
			total_up += delta.uplink
			total_down += delta.downlink
			previous = current
		assert total_up == ups[-1] - ups[0]
		assert total_down == downs[-1] - downs[0]

	def test_deltas_are_never_negative(self):
		sequence = [(500, 500), (10, 900), (5, 3), (700, 700), (0, 0)]
		previous = None
		for up, down in sequence:
			current = RawCounters(up, down)
			delta = normalize(previous, current)
			assert delta.uplink >= 0 and delta.downlink >= 0
			previous = current

	def test_negative_raw_counter_rejected(self):
		with pytest.raises(ValueError):
			normalize(RawCounters(10, 10), RawCounters(-1, 10))
