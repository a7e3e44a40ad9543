"""Unit tests for common utilities."""

from datetime import datetime, timezone

import pytest

from cdc_relay.common.utils import (
    backoff_delays,
    int_to_lsn,
    key_token,
    lsn_to_int,
    parse_cdc_timestamp,
    retry_with_backoff,
    stable_hash,
)


@pytest.mark.unit
class TestKeyToken:
    """Test canonical key rendering."""

    def test_column_order_does_not_matter(self):
        """Test keys with the same columns in different order match."""
        assert key_token({"a": 1, "b": "x"}) == key_token({"b": "x", "a": 1})

    def test_distinct_values_distinct_tokens(self):
        """Test different values give different tokens."""
        assert key_token({"id": 1}) != key_token({"id": "1"})

    def test_stable_hash_is_deterministic(self):
        """Test hash does not depend on the process hash seed."""
        assert stable_hash('{"id":333}') == stable_hash('{"id":333}')
        assert stable_hash("a") != stable_hash("b")


@pytest.mark.unit
class TestLsn:
    """Test LSN conversions."""

    def test_textual_lsn(self):
        """Test X/Y form converts to a 64-bit position."""
        assert lsn_to_int("0/16B3748") == 0x16B3748
        assert lsn_to_int("1/0") == 1 << 32

    def test_round_trip_textual_form(self):
        """Test integer positions render back to X/Y form."""
        assert int_to_lsn(lsn_to_int("16/B374D848")) == "16/B374D848"

    def test_int_and_digit_string(self):
        """Test plain integers are accepted."""
        assert lsn_to_int(42) == 42
        assert lsn_to_int("42") == 42

    @pytest.mark.parametrize("value", [-1, "abc", None, 1.5])
    def test_invalid_lsn(self, value):
        """Test invalid LSNs raise ValueError."""
        with pytest.raises(ValueError):
            lsn_to_int(value)


@pytest.mark.unit
class TestParseTimestamp:
    """Test CDC timestamp parsing."""

    def test_epoch_millis(self):
        """Test epoch milliseconds become aware UTC datetimes."""
        parsed = parse_cdc_timestamp(1_700_000_000_000)
        assert parsed == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_iso_string_with_z(self):
        """Test ISO strings with a Z suffix."""
        parsed = parse_cdc_timestamp("2024-01-02T03:04:05Z")
        assert parsed.tzinfo is not None
        assert parsed.hour == 3

    def test_naive_datetime_gets_utc(self):
        """Test naive datetimes are taken as UTC."""
        parsed = parse_cdc_timestamp(datetime(2024, 1, 1))
        assert parsed.tzinfo == timezone.utc

    def test_garbage_is_none(self):
        """Test unparseable values give None."""
        assert parse_cdc_timestamp("not a date") is None
        assert parse_cdc_timestamp(None) is None


@pytest.mark.unit
class TestBackoff:
    """Test backoff helpers."""

    def test_delays_are_capped(self):
        """Test the delay sequence grows and then stays at the cap."""
        delays = backoff_delays(1.0, 2.0, 5.0)
        assert [next(delays) for _ in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_retry_until_success(self):
        """Test retry returns the first successful result."""
        calls = []
        sleeps = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "ok"

        result = retry_with_backoff(
            flaky, max_retries=5, initial_delay=0.5, retry_on=(ConnectionError,), sleep=sleeps.append
        )

        assert result == "ok"
        assert len(calls) == 3
        assert sleeps == [0.5, 1.0]

    def test_retry_exhausted_raises_last_error(self):
        """Test the last exception propagates after all retries."""
        with pytest.raises(ConnectionError):
            retry_with_backoff(
                lambda: (_ for _ in ()).throw(ConnectionError("down")),
                max_retries=2,
                retry_on=(ConnectionError,),
                sleep=lambda _: None,
            )

    def test_non_retryable_error_propagates_immediately(self):
        """Test errors outside retry_on are not retried."""
        calls = []

        def broken():
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            retry_with_backoff(broken, max_retries=3, retry_on=(ConnectionError,), sleep=lambda _: None)
        assert len(calls) == 1
