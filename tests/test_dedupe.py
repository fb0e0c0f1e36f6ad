from nft_sales_bot.dedupe import BoundedSeenSet, CooldownTable


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_seen_set_rejects_repeat_keys() -> None:
    seen = BoundedSeenSet(maxlen=10)
    assert seen.add("order-1") is True
    assert seen.add("order-1") is False
    assert "order-1" in seen


def test_seen_set_drops_oldest_past_capacity() -> None:
    seen = BoundedSeenSet(maxlen=2)
    seen.add("a")
    seen.add("b")
    seen.add("c")
    assert len(seen) == 2
    assert "a" not in seen
    assert "c" in seen


def test_cooldown_suppresses_within_window() -> None:
    clock = FakeClock()
    table = CooldownTable(cooldown_seconds=24 * 3600, clock=clock)
    key = ("0xseller", "42")

    assert table.try_acquire(key) is True
    clock.now += 3600
    assert table.try_acquire(key) is False


def test_cooldown_allows_after_window() -> None:
    clock = FakeClock()
    table = CooldownTable(cooldown_seconds=24 * 3600, clock=clock)
    key = ("0xseller", "42")

    table.mark(key)
    clock.now += 25 * 3600
    assert table.is_cooling(key) is False
    assert len(table) == 0


def test_cooldown_table_is_bounded() -> None:
    clock = FakeClock()
    table = CooldownTable(cooldown_seconds=3600, max_entries=3, clock=clock)
    for i in range(5):
        clock.now += 1
        table.mark(("0xseller", str(i)))

    assert len(table) == 3
    assert table.is_cooling(("0xseller", "0")) is False
    assert table.is_cooling(("0xseller", "4")) is True
