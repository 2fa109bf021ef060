"""
Stop-name disambiguation.

Agencies often give the same name to the stops on either side of a street.
Riders searching by name need to tell them apart, so pairs of same-named
stops are relabelled using the destinations of the trips that serve them.
Anything the rules cannot settle goes into a hand-maintained override table.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from metrocast.services.capitalization import fix_capitalization
from metrocast.services.errors import AmbiguousStopNameError

logger = logging.getLogger(__name__)

# Stop ids whose names cannot be split by destination alone.
DEFAULT_STOP_NAME_OVERRIDES: dict[str, str] = {
    # PTC
    "0:422": "PTC (Outbound)",
    "0:820": "PTC (Inbound)",
    # Congress & Weymouth
    "0:183": "Congress & Weymouth (Outbound)",
    "0:184": "Congress & Weymouth (Inbound)",
    # Congress & Park
    "0:167": "Congress & Park (Inbound)",
    "0:168": "Congress & Park (Outbound)",
    # Congress & Forest, not to be confused with Forest & Congress around the corner
    "0:1054": "Congress & Forest (Inbound)",
    "0:132": "Congress & Forest (Outbound)",
    # Preble St ext. + Marginal Way
    "0:423": "Preble St ext. + Marginal Way (Inbound)",
    "0:693": "Preble St ext. + Marginal Way (Outbound)",
    # Stevens Ave + Brighton Ave
    "0:502": "Stevens Ave + Brighton Ave (Outbound)",
    "0:503": "Stevens Ave + Brighton Ave (Inbound)",
}

# stop_id -> route_id -> headsigns, in first-seen order
DestinationsByStopId = Mapping[str, Mapping[str, Iterable[str]]]


def flat_destinations(destinations_by_route: Mapping[str, Iterable[str]]) -> list[str]:
    """Distinct destinations served at a stop across all of its routes."""
    seen: dict[str, None] = {}
    for destinations in destinations_by_route.values():
        for destination in destinations:
            seen.setdefault(destination, None)
    return list(seen)


def _rule_based_names(
    stop_name: str,
    stop_ids: tuple[str, str],
    destinations_by_stop: DestinationsByStopId,
    hub_destinations: frozenset[str],
) -> dict[str, str]:
    stop_a, stop_b = stop_ids

    if stop_a not in destinations_by_stop or stop_b not in destinations_by_stop:
        missing = stop_a if stop_a not in destinations_by_stop else stop_b
        logger.warning("Missing destinations for stop %s - %s", missing, stop_name)
        return {}

    a_destinations = flat_destinations(destinations_by_stop[stop_a])
    b_destinations = flat_destinations(destinations_by_stop[stop_b])

    # Geographic direction is unreliable for routes that loop through the
    # city center, but anything heading to a hub is inbound by definition.
    if hub_destinations.intersection(a_destinations):
        return {
            stop_a: f"{stop_name} (Inbound)",
            stop_b: f"{stop_name} (Outbound)",
        }
    if hub_destinations.intersection(b_destinations):
        return {
            stop_a: f"{stop_name} (Outbound)",
            stop_b: f"{stop_name} (Inbound)",
        }

    if len(a_destinations) == 1 or len(b_destinations) == 1:
        return {
            stop_a: (
                f"{stop_name} ⇨ {a_destinations[0]}"
                if len(a_destinations) == 1
                else stop_name
            ),
            stop_b: (
                f"{stop_name} ⇨ {b_destinations[0]}"
                if len(b_destinations) == 1
                else stop_name
            ),
        }

    logger.warning(
        "Ambiguous stop name %r needs an override entry:\n%s",
        stop_name,
        "\n".join(
            [f"  A {stop_a} {destination}" for destination in a_destinations]
            + [f"  B {stop_b} {destination}" for destination in b_destinations]
        ),
    )
    return {}


def name_overrides(
    stop_name: str,
    stop_ids: list[str],
    destinations_by_stop: DestinationsByStopId,
    *,
    hub_destinations: Iterable[str] = ("PULSE",),
    overrides: Mapping[str, str] = DEFAULT_STOP_NAME_OVERRIDES,
) -> dict[str, str]:
    """Return new display names for a group of stops sharing ``stop_name``.

    Stops missing from the result keep their original name.

    Raises:
        AmbiguousStopNameError: three or more stops share the name and the
            override table does not cover them.
    """
    if len(stop_ids) <= 1:
        return {}

    # One stop of the group may keep the original name.
    covered = [stop_id for stop_id in stop_ids if stop_id in overrides]
    if len(covered) >= len(stop_ids) - 1:
        return {stop_id: overrides[stop_id] for stop_id in covered}

    if len(stop_ids) > 2:
        raise AmbiguousStopNameError(
            f"Stop name {stop_name!r} has more than two stop ids "
            f"[{', '.join(stop_ids)}]"
        )

    renamed = _rule_based_names(
        stop_name,
        (stop_ids[0], stop_ids[1]),
        destinations_by_stop,
        frozenset(hub_destinations),
    )
    return {stop_id: fix_capitalization(name) for stop_id, name in renamed.items()}


def disambiguate_stop_names(
    stop_names: Mapping[str, str],
    destinations_by_stop: DestinationsByStopId,
    *,
    hub_destinations: Iterable[str] = ("PULSE",),
    overrides: Mapping[str, str] = DEFAULT_STOP_NAME_OVERRIDES,
) -> dict[str, str]:
    """Compute display-name overrides for every stop that serves a trip.

    Args:
        stop_names: stop_id -> raw stop name.
        destinations_by_stop: stop_id -> route_id -> trip headsigns.
        hub_destinations: Headsigns of the central hub(s).
        overrides: Hand-maintained stop_id -> name table.

    Returns:
        stop_id -> new display name, for renamed stops only.
    """
    hubs = tuple(hub_destinations)
    stops_by_name: dict[str, list[str]] = {}
    for stop_id, name in stop_names.items():
        if stop_id not in destinations_by_stop:
            continue
        stops_by_name.setdefault(name, []).append(stop_id)

    renamed: dict[str, str] = {}
    for name, stop_ids in stops_by_name.items():
        renamed.update(
            name_overrides(
                name,
                stop_ids,
                destinations_by_stop,
                hub_destinations=hubs,
                overrides=overrides,
            )
        )
    return renamed
