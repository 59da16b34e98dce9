"""
Vote tally and elimination resolver
投票统计与淘汰判定 - 纯函数，不访问数据库
"""

import random
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence


@dataclass(frozen=True)
class Ballot:
    voter_id: str
    target_id: str
    weight: int = 1


@dataclass(frozen=True)
class Candidate:
    player_id: str
    is_eliminated: bool = False
    is_immune: bool = False


@dataclass
class TallyOutcome:
    eliminated_id: Optional[str] = None
    saved_by_immunity_id: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)
    max_votes: int = 0

    @property
    def has_elimination(self) -> bool:
        return self.eliminated_id is not None


def count_votes(ballots: Iterable[Ballot], candidates: Sequence[Candidate]) -> Dict[str, int]:
    """
    Weighted vote totals per eligible target
    每个投票者只计最后一票；投给不存在或已淘汰玩家的票忽略
    """
    eligible = {c.player_id for c in candidates if not c.is_eliminated}

    latest: Dict[str, Ballot] = {}
    for ballot in ballots:
        latest[ballot.voter_id] = ballot

    counts: Dict[str, int] = {}
    for ballot in latest.values():
        if ballot.target_id not in eligible:
            continue
        counts[ballot.target_id] = counts.get(ballot.target_id, 0) + max(1, ballot.weight)
    return counts


def resolve_elimination(
    ballots: Iterable[Ballot],
    candidates: Sequence[Candidate],
    rng: Optional[random.Random] = None,
) -> TallyOutcome:
    """
    Decide who leaves the bunker this round.

    The highest vote tier that contains a non-immune player decides: one of
    its non-immune players is drawn uniformly at random. Tiers made only of
    immune players are skipped. The first immune player of the top tier, in
    candidate order, is reported as saved by immunity when somebody else is
    eliminated instead (or nobody is).
    """
    rng = rng or random
    counts = count_votes(ballots, candidates)
    if not counts:
        return TallyOutcome(counts={})

    max_votes = max(counts.values())
    by_id = {c.player_id: c for c in candidates}

    leaders = [c for c in candidates if counts.get(c.player_id) == max_votes]
    saved = next((c.player_id for c in leaders if c.is_immune), None)

    tiers = sorted(set(counts.values()), reverse=True)
    eliminated_id = None
    for tier in tiers:
        pool: List[str] = [
            c.player_id for c in candidates
            if counts.get(c.player_id) == tier and not by_id[c.player_id].is_immune
        ]
        if pool:
            eliminated_id = rng.choice(pool)
            break

    return TallyOutcome(
        eliminated_id=eliminated_id,
        saved_by_immunity_id=saved,
        counts=counts,
        max_votes=max_votes,
    )
