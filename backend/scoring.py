import math
from typing import Dict, List

import config


def compute_points(correct: bool, time_elapsed: float, time_limit: float) -> int:
    """Points for one answer: 1000 base plus up to 1000 for speed."""
    if not correct:
        return 0
    time_ratio = max(0.0, 1 - (time_elapsed / time_limit))
    raw = config.BASE_POINTS + config.TIME_BONUS_POOL * time_ratio
    # Half-up, so x.5 never rounds towards the even neighbour
    return int(math.floor(raw + 0.5))


def get_leaderboard(players: Dict[str, dict]) -> List[dict]:
    # sorted() is stable with reverse=True, so equal scores keep join order
    sorted_players = sorted(
        players.values(),
        key=lambda x: x["score"],
        reverse=True
    )
    return [
        {"rank": i + 1, "nickname": p["nickname"], "score": p["score"]}
        for i, p in enumerate(sorted_players)
    ]


def get_player_results(players: Dict[str, dict], answers: Dict[str, dict]) -> List[dict]:
    """Per-player outcome of the current question, in roster order."""
    results = []
    for client_id, player in players.items():
        answer = answers.get(client_id)
        results.append({
            "nickname": player["nickname"],
            "answered": answer is not None,
            "correct": bool(answer and answer["is_correct"]),
            "points": answer["points"] if answer else 0,
            "score": player["score"],
        })
    return results
