import pytest

from sadmapping.timer import Timer, TimerRecord, evaluate_and_call


def test_evaluate_records_and_returns_result():
    timer = Timer()
    assert timer.evaluate(lambda: 41 + 1, "add") == 42
    timer.evaluate(lambda: None, "add")
    record = timer.records["add"]
    assert record.func_name == "add"
    assert len(record.time_usage_in_ms) == 2
    assert all(t >= 0.0 for t in record.time_usage_in_ms)


def test_mean_time_of_missing_name_is_zero():
    assert Timer().get_mean_time("nothing") == 0.0


def test_mean_time_of_records():
    timer = Timer()
    timer.records["f"] = TimerRecord("f", [1.0, 3.0])
    assert timer.get_mean_time("f") == pytest.approx(2.0)


def test_mean_time_lies_within_recorded_range():
    timer = Timer()
    for _ in range(3):
        timer.evaluate(lambda: sum(range(100)), "loop")
    usage = timer.records["loop"].time_usage_in_ms
    assert min(usage) <= timer.get_mean_time("loop") <= max(usage)


def test_clear_removes_records():
    timer = Timer()
    timer.evaluate(lambda: None, "x")
    timer.clear()
    assert timer.records == {}
    assert timer.get_mean_time("x") == 0.0


def test_print_all_lists_every_record():
    timer = Timer()
    timer.evaluate(lambda: None, "alpha")
    timer.evaluate(lambda: None, "alpha")
    timer.evaluate(lambda: None, "beta")
    lines = timer.print_all()
    assert len(lines) == 4
    assert "[ alpha ]" in lines[1] and lines[1].endswith("called times: 2")
    assert "[ beta ]" in lines[2] and lines[2].endswith("called times: 1")


def test_dump_into_file_layout(tmp_path):
    timer = Timer()
    timer.records["b"] = TimerRecord("b", [3.0])
    timer.records["a"] = TimerRecord("a", [1.0, 2.0])
    path = tmp_path / "times.csv"
    timer.dump_into_file(path)
    assert path.read_text().splitlines() == ["a, b, ", "1,3,", "2,,"]


def test_dump_into_unwritable_path_raises(tmp_path):
    timer = Timer()
    timer.evaluate(lambda: None, "a")
    with pytest.raises(OSError):
        timer.dump_into_file(tmp_path / "missing_dir" / "times.csv")


def test_evaluate_and_call_runs_requested_times():
    calls = []
    average = evaluate_and_call(lambda: calls.append(1), "append", 7)
    assert len(calls) == 7
    assert average >= 0.0


def test_evaluate_and_call_default_times():
    calls = []
    evaluate_and_call(lambda: calls.append(1))
    assert len(calls) == 10