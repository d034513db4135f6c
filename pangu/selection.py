"""Greedy largest-first selection of spendable units.

For each asset type with a positive target, candidates from the source
addresses (in the order given) are pooled, ordered by value descending with a
stable sort, and taken until the target is covered. Taking the largest first
keeps the input count small.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Union

from pangu.errors import InsufficientResources
from pangu.observability import PanguLayer, get_logger
from pangu.wallet import CertificateUnit, SpendableUnit, Wallet

logger = get_logger("selection", PanguLayer.SELECTION)

Unit = Union[SpendableUnit, CertificateUnit]


@dataclass(frozen=True)
class Pick:
    address: str
    unit: Unit

    @property
    def unit_id(self) -> str:
        return self.unit.unit_id


@dataclass
class Selection:
    required: Dict[int, float]
    picks: List[Pick] = field(default_factory=list)
    totals: Dict[int, float] = field(default_factory=dict)

    @property
    def unit_ids(self) -> List[str]:
        return [p.unit_id for p in self.picks]

    @property
    def spendable(self) -> List[Pick]:
        return [p for p in self.picks if not p.unit.is_certificate]

    @property
    def certificates(self) -> List[Pick]:
        return [p for p in self.picks if p.unit.is_certificate]

    def leftover(self, asset_type: int) -> float:
        return self.totals.get(asset_type, 0.0) - self.required.get(asset_type, 0.0)

    def contributing_addresses(self) -> List[str]:
        """Addresses that contributed at least one pick, first-pick order."""
        seen: List[str] = []
        for p in self.picks:
            if p.address not in seen:
                seen.append(p.address)
        return seen


def _candidates(
    wallet: Wallet,
    sources: Sequence[str],
    asset_type: int,
    exclude: Iterable[str],
    use_certificates: bool,
) -> List[Pick]:
    skip = set(exclude)
    pool: List[Pick] = []
    for address in sources:
        for unit in wallet.eligible_units(address, skip):
            if unit.asset_type == asset_type:
                pool.append(Pick(address, unit))
        if use_certificates:
            for cert in wallet.eligible_certificates(address, skip):
                if cert.asset_type == asset_type:
                    pool.append(Pick(address, cert))
    # sorted() is stable: equal values keep source-address order
    return sorted(pool, key=lambda p: p.unit.value, reverse=True)


def select_units(
    wallet: Wallet,
    sources: Sequence[str],
    required: Dict[int, float],
    exclude: Iterable[str] = (),
    use_certificates: bool = False,
    epsilon: float = 1e-8,
) -> Selection:
    """Choose units covering `required` (asset type -> amount).

    A pool is treated as covering its target once it falls short by no more
    than `epsilon`, so float sums such as 0.7 + 0.2 + 0.1 cover 1.0.

    Raises InsufficientResources with the shortfall when the eligible pool
    for an asset type cannot cover its target.
    """
    exclude = set(exclude)
    selection = Selection(required=dict(required))
    for asset_type in sorted(required):
        target = required[asset_type]
        if target <= 0:
            continue
        pool = _candidates(wallet, sources, asset_type, exclude, use_certificates)
        floor = target - epsilon
        total = 0.0
        for pick in pool:
            if total >= floor:
                break
            selection.picks.append(pick)
            total += pick.unit.value
        if total < floor:
            available = sum(p.unit.value for p in pool)
            logger.info(
                "Selection short",
                asset_type=asset_type,
                required=target,
                available=available,
            )
            raise InsufficientResources(asset_type, target, available)
        selection.totals[asset_type] = total
        logger.debug(
            "Selected units",
            asset_type=asset_type,
            count=sum(1 for p in selection.picks if p.unit.asset_type == asset_type),
            total=total,
        )
    return selection
