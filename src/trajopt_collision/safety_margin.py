"""Per link-pair safety margins and penalty coefficients."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from .errors import CollisionTermError


def _pair_key(link_a: str, link_b: str) -> frozenset:
    return frozenset((link_a, link_b))


@dataclass(frozen=True, eq=False)
class SafetyMarginData:
    """Distance margin and cost coefficient for every link pair.

    Pairs that are not listed use the default entry. Lookups are symmetric
    in the two link names.

    Attributes:
        default_margin: Margin applied to unlisted pairs [m].
        default_coeff: Penalty coefficient applied to unlisted pairs.
        pair_data: Mapping of ``frozenset({link_a, link_b})`` to
            ``(margin, coeff)``.
    """

    default_margin: float
    default_coeff: float
    pair_data: Mapping[frozenset, tuple[float, float]] = field(
        default_factory=dict,
    )

    def __post_init__(self) -> None:
        normalized = {}
        for key, (margin, coeff) in dict(self.pair_data).items():
            links = tuple(key)
            if len(links) == 1:
                links = links * 2
            if len(links) != 2:
                raise CollisionTermError(
                    f"Safety margin pair must name two links, got {links}"
                )
            normalized[_pair_key(*links)] = (float(margin), float(coeff))
        object.__setattr__(self, "pair_data", MappingProxyType(normalized))

    @classmethod
    def from_pairs(
        cls,
        default_margin: float,
        default_coeff: float,
        pairs: dict[tuple[str, str], tuple[float, float]] | None = None,
    ) -> "SafetyMarginData":
        """Create from a dict keyed by ``(link_a, link_b)`` tuples."""
        pair_data = {
            _pair_key(a, b): value for (a, b), value in (pairs or {}).items()
        }
        return cls(float(default_margin), float(default_coeff), pair_data)

    @classmethod
    def from_dict(cls, data: Mapping) -> "SafetyMarginData":
        """Parse the JSON shape used by collision term descriptors.

        Example::

            {"default_margin": 0.025, "default_coeff": 20.0,
             "pairs": [{"pair": ["link_a", "link_b"],
                        "margin": 0.05, "coeff": 10.0}]}
        """
        try:
            default_margin = float(data["default_margin"])
            default_coeff = float(data["default_coeff"])
            pairs = {}
            for entry in data.get("pairs", []):
                link_a, link_b = entry["pair"]
                pairs[(link_a, link_b)] = (
                    float(entry.get("margin", default_margin)),
                    float(entry.get("coeff", default_coeff)),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise CollisionTermError(
                f"Malformed safety margin entry {data!r}: {e}"
            ) from e
        return cls.from_pairs(default_margin, default_coeff, pairs)

    def lookup(self, link_a: str, link_b: str) -> tuple[float, float]:
        """Return ``(margin, coeff)`` for a pair of links."""
        return self.pair_data.get(
            _pair_key(link_a, link_b),
            (self.default_margin, self.default_coeff),
        )

    @property
    def max_margin(self) -> float:
        """Largest margin among the default and all listed pairs."""
        margins = [margin for margin, _ in self.pair_data.values()]
        return max([self.default_margin, *margins])

    @property
    def pairs_with_zero_coeff(self) -> frozenset:
        """Pairs whose contacts carry no penalty and are not reported."""
        return frozenset(
            key for key, (_, coeff) in self.pair_data.items() if coeff == 0.0
        )

    def is_contact_allowed(self, link_a: str, link_b: str) -> bool:
        """Whether contacts between the two links are ignored."""
        return _pair_key(link_a, link_b) in self.pairs_with_zero_coeff

    def link_names(self) -> set[str]:
        """All link names referenced by pair entries."""
        names = set()
        for key in self.pair_data:
            names.update(key)
        return names


def create_safety_margin_data_vector(
    num_elements: int,
    default_margin: float,
    default_coeff: float,
) -> list[SafetyMarginData]:
    """Create one SafetyMarginData per timestep with the same defaults."""
    return [
        SafetyMarginData(float(default_margin), float(default_coeff))
        for _ in range(num_elements)
    ]
