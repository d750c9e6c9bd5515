from typing import Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict

GROUP_BY_FACTOR = "group_by"


class StratumKey(BaseModel):
    """
    Canonical identity of one stratification cell.

    ``levels`` is ordered by factor declaration order so that two keys built
    from the same randomization serialize identically.
    """

    levels: Tuple[Tuple[str, str], ...] = ()
    group_level: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.levels)

    def factor_levels(self) -> Dict[str, str]:
        """Factor -> level including the group-membership level as its own factor."""
        levels = self.as_dict()
        if self.group_level is not None:
            levels[GROUP_BY_FACTOR] = self.group_level
        return levels

    def serialize(self) -> str:
        parts = [f"{factor}={level}" for factor, level in self.levels]
        if self.group_level is not None:
            parts.append(f"{GROUP_BY_FACTOR}={self.group_level}")
        return "&".join(parts)

    def __str__(self) -> str:
        return self.serialize()


class StratumModel(BaseModel):
    """A stratum of the catalog with its stable display index."""

    index: int
    key: str
    levels: Dict[str, str]
    group_level: Optional[str] = None
    allocated: int = 0
