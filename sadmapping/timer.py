"""Wall-clock timing of named calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class TimerRecord:
    func_name: str = ""
    time_usage_in_ms: list[float] = field(default_factory=list)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values)


class Timer:
    """Collects per-name call durations in milliseconds."""

    def __init__(self):
        self.records: dict[str, TimerRecord] = {}

    def evaluate(self, func: Callable, func_name: str):
        """Run func, record its duration under func_name and return its result."""
        start = time.perf_counter()
        result = func()
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        self.records.setdefault(func_name, TimerRecord(func_name)).time_usage_in_ms.append(elapsed_ms)
        return result

    def print_all(self) -> list[str]:
        """Log the average time of every record and return the logged lines."""
        lines = [">>> ===== Printing run time ====="]
        for name in sorted(self.records):
            usage = self.records[name].time_usage_in_ms
            lines.append(
                f"> [ {name} ] average time usage: {_mean(usage):g} ms , called times: {len(usage)}"
            )
        lines.append(">>> ===== Printing run time end =====")
        for line in lines:
            logger.info(line)
        return lines

    def dump_into_file(self, file_name) -> None:
        """Write all records as comma separated columns, one per name."""
        names = sorted(self.records)
        columns = [self.records[name].time_usage_in_ms for name in names]
        max_length = max((len(c) for c in columns), default=0)
        with open(file_name, "w", encoding="utf-8") as out:
            logger.info("Dump Time Records into file: %s", file_name)
            out.write("".join(f"{name}, " for name in names) + "\n")
            for i in range(max_length):
                out.write("".join(f"{c[i]:g}," if i < len(c) else "," for c in columns) + "\n")

    def get_mean_time(self, func_name: str) -> float:
        record = self.records.get(func_name)
        if record is None:
            return 0.0
        return _mean(record.time_usage_in_ms)

    def clear(self) -> None:
        self.records.clear()


def evaluate_and_call(func: Callable, func_name: str = "", times: int = 10) -> float:
    """Call func `times` times and return the mean duration in milliseconds."""
    total_ms = 0.0
    for _ in range(times):
        start = time.perf_counter()
        func()
        total_ms += (time.perf_counter() - start) * 1000.0
    average = total_ms / times
    logger.info("method %s average time / calls: %s/%d ms.", func_name, average, times)
    return average