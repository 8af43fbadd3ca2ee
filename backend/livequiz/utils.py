import time
from typing import Dict


def now_ts() -> float:
    return time.time()


def elapsed_millis(since: float, now: float) -> int:
    return max(0, int(round((now - since) * 1000)))


def sort_leaderboard(scores: Dict[str, int]) -> list[dict]:
    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0].lower()))
    return [{"name": name, "score": score} for name, score in ranked]
