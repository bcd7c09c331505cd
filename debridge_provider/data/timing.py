import time
from typing import Callable, Dict, Optional


class PerformanceTimer:
    """Wall-clock checkpoints for one operation, reported in milliseconds"""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self.start_time = clock()
        self.marks: Dict[str, float] = {}

    def mark(self, label: str) -> None:
        self.marks[label] = self._clock()

    def elapsed_ms(self) -> float:
        return (self._clock() - self.start_time) * 1000

    def measure(self, start_mark: str, end_mark: str) -> Optional[float]:
        start = self.marks.get(start_mark)
        end = self.marks.get(end_mark)
        if start is None or end is None:
            return None
        return (end - start) * 1000

    def metadata(self) -> Dict[str, float]:
        data = {"total_ms": round(self.elapsed_ms(), 2)}
        for label, at in self.marks.items():
            data[f"{label}_ms"] = round((at - self.start_time) * 1000, 2)
        return data
