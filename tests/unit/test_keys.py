"""
Unit tests for push key generation.
"""

from claimqueue.store.keys import PUSH_CHARS, PushKeyGenerator


class TestPushKeys:
    """Tests for PushKeyGenerator."""

    def test_key_shape(self):
        """Test that keys are 20 characters from the push alphabet."""
        key = PushKeyGenerator().generate()

        assert len(key) == 20
        assert all(char in PUSH_CHARS for char in key)

    def test_keys_sort_by_time(self):
        """Test that a later key sorts after an earlier one."""
        generator = PushKeyGenerator()

        early = generator.generate(now_ms=1_000)
        late = generator.generate(now_ms=2_000)

        assert early < late
        assert early[:8] != late[:8]

    def test_same_millisecond_keys_increase(self):
        """Test that keys made in one millisecond stay strictly ordered."""
        generator = PushKeyGenerator()

        keys = [generator.generate(now_ms=5_000) for _ in range(200)]

        assert keys == sorted(keys)
        assert len(set(keys)) == len(keys)
        assert {key[:8] for key in keys} == {keys[0][:8]}

    def test_clock_going_backwards(self):
        """Test that a clock step backwards never produces a smaller key."""
        generator = PushKeyGenerator()

        first = generator.generate(now_ms=10_000)
        second = generator.generate(now_ms=9_000)

        assert second > first

    def test_random_part_overflow(self):
        """Test that exhausting the random part moves to the next millisecond."""
        generator = PushKeyGenerator()
        first = generator.generate(now_ms=7_000)
        generator._last_random = [63] * 12

        second = generator.generate(now_ms=7_000)

        assert second > first
        assert second[:8] != first[:8]
