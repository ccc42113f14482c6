from conveyor.sentinel import SentinelEvent, SentinelKind, SentinelScanner


def _kinds(events: list[SentinelEvent]) -> list[SentinelKind]:
    return [event.kind for event in events]


def test_done_marker_fires_once() -> None:
    scanner = SentinelScanner()

    first = scanner.feed("working...\n<status>done</status>\n")
    second = scanner.feed("<status>done</status>\n")

    assert _kinds(first) == [SentinelKind.DONE]
    assert second == []
    assert SentinelKind.DONE in scanner.fired


def test_done_marker_split_across_chunks() -> None:
    scanner = SentinelScanner()

    assert scanner.feed("output <status>do") == []
    events = scanner.feed("ne</status>")

    assert _kinds(events) == [SentinelKind.DONE]


def test_summary_is_extracted_and_trimmed() -> None:
    scanner = SentinelScanner()

    events = scanner.feed("<status>done</status>\n<summary>\n  Added the login form.\n</summary>\n")

    assert _kinds(events) == [SentinelKind.DONE, SentinelKind.SUMMARY]
    assert events[1].text == "Added the login form."


def test_summary_tags_are_case_insensitive() -> None:
    events = SentinelScanner().feed("<SUMMARY>notes</Summary>")

    assert events == [SentinelEvent(SentinelKind.SUMMARY, "notes")]


def test_summary_split_across_chunks() -> None:
    scanner = SentinelScanner()

    assert scanner.feed("<summ") == []
    assert scanner.feed("ary>part one, ") == []
    events = scanner.feed("part two</sum")
    assert events == []
    events = scanner.feed("mary>")

    assert events == [SentinelEvent(SentinelKind.SUMMARY, "part one, part two")]


def test_summary_uses_last_opening_tag_before_close() -> None:
    events = SentinelScanner().feed("<summary>draft <summary>final</summary>")

    assert events[0].text == "final"


def test_only_first_closing_tag_is_considered() -> None:
    scanner = SentinelScanner()

    events = scanner.feed("stray </summary> then <summary>late</summary>")

    assert events == []
    assert SentinelKind.SUMMARY not in scanner.fired
    assert scanner.feed("<summary>again</summary>") == []


def test_summary_fires_once() -> None:
    scanner = SentinelScanner()

    scanner.feed("<summary>one</summary>")

    assert scanner.feed("<summary>two</summary>") == []


def test_reset_clears_state() -> None:
    scanner = SentinelScanner()
    scanner.feed("<status>done</status>")

    scanner.reset()

    assert scanner.buffer == ""
    assert _kinds(scanner.feed("<status>done</status>")) == [SentinelKind.DONE]
