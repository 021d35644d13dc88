"""
Deterministic spatial layout for the galaxy view.

Repositories are placed in the universe ("galaxy" placement) and each commit or
pull request is placed around its repository ("local" placement). Every
function here is a pure function of its inputs: no wall clock, no global RNG.
"""
import math
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Protocol, Sequence, Tuple

from src.domain.commit_types import classify_commit, commit_color
from src.domain.models import (
    MAX_COORDINATE,
    MIN_COORDINATE,
    GalaxyCoordinates,
    StarCoordinates,
)
from src.domain.seeded_random import SeededGenerator, seed_for

GOLDEN_ANGLE = math.pi * (3 - math.sqrt(5))
SPIRAL_INNER_RADIUS = 0.05
SPIRAL_OUTER_RADIUS = 0.45
SPIRAL_Z_SCALE = 0.2

CONSTELLATION_RING_SLOTS = 12

STAR_BASE_RADIUS = 0.02
STAR_Z_SCALE = 0.1
COMMIT_ARMS = 3
COMMIT_RADIUS_SCALE = 0.2
PR_ARMS = 4
PR_RADIUS_SCALE = 0.25
CLUSTER_BASE_RADIUS = 0.035
CLUSTER_RADIUS_SCALE = 0.02

COMMIT_STAR_SIZE = 3.0
PR_STAR_SIZE = 5.0
PR_STAR_COLOR = "#8ECAE6"

# Fallback centre for repositories that were never placed.
DEFAULT_GALAXY = GalaxyCoordinates(x=0.5, y=0.5, z=MIN_COORDINATE, size=2.0)


class GalaxyLayout(str, Enum):
    SPIRAL = "spiral"
    CONSTELLATION = "constellation"


class CommitLayout(str, Enum):
    CLUSTERED = "clustered"
    SPIRAL = "spiral"


class Placeable(Protocol):
    id: int
    created_at: datetime


class Point(NamedTuple):
    x: float
    y: float


class ConstellationTemplate(NamedTuple):
    name: str
    points: Tuple[Point, ...]


def _template(name: str, *coords: Tuple[float, float]) -> ConstellationTemplate:
    return ConstellationTemplate(name, tuple(Point(x, y) for x, y in coords))


ZODIAC_TEMPLATES: Tuple[ConstellationTemplate, ...] = (
    _template("aries", (0, 0), (1, 1), (2, 0.5)),
    _template("taurus", (0, 1), (1, 2), (2, 1.6), (3, 1.2), (4, 1.4), (5, 2.1), (6, 1.5)),
    _template("gemini", (0, 0), (0, 2), (0, 4), (2, 0), (2, 2), (2, 4)),
    _template("cancer", (0, 0.3), (1.5, 1.2), (3, 0.4)),
    _template("leo", (0, 1), (1, 2), (2, 2.2), (3, 1.8), (4, 1.2), (5, 1), (6, 1.4), (5, 2.6), (4, 3.1)),
    _template("virgo", (0, 0.2), (1, 1), (2, 0.6), (3, 1.5), (4, 1.1), (5, 2), (6, 1.6), (7, 2.5)),
    _template("libra", (0, 0.2), (1, 0.6), (2, 0.2)),
    _template(
        "scorpio",
        (0, 0.5), (1, 0.8), (2, 1), (3, 1.2), (4, 1.4), (5, 1.6), (6, 1.9),
        (7, 2.2), (6.5, 2.6), (5.5, 2.8), (4.5, 2.6), (3.5, 2.4), (2.5, 2.2), (1.5, 2.0),
    ),
    _template(
        "sagittarius",
        (0, 1), (1, 2), (2, 1.6), (3, 2.2), (4, 1.8), (3.2, 1), (2.2, 0.6),
        (1.2, 0.8), (0.8, 1.8), (1.8, 2.8), (2.8, 3.2),
    ),
    _template("capricorn", (0, 1), (1, 1.6), (2, 2), (3, 1.7), (4, 1.2), (5, 1.4), (6, 1.1)),
    _template("aquarius", (0, 0.6), (1, 1), (2, 0.6)),
    _template("pisces", (0, 1), (1, 0.6), (2, 1)),
)


class StarPlacement(NamedTuple):
    coordinates: StarCoordinates
    size: float
    color: str


def clamp(value: float, minimum: float = MIN_COORDINATE, maximum: float = MAX_COORDINATE) -> float:
    return min(maximum, max(minimum, value))


def time_bounds(timestamps: Iterable[datetime]) -> Optional[Tuple[datetime, datetime]]:
    values = list(timestamps)
    if not values:
        return None
    return min(values), max(values)


def age_ratio(timestamp: datetime, oldest: datetime, newest: datetime) -> float:
    """Normalized position of timestamp between oldest (0) and newest (1)."""
    span = (newest - oldest).total_seconds()
    if span <= 0:
        return 0.0
    return min(1.0, max(0.0, (timestamp - oldest).total_seconds() / span))


def _sorted_by_creation(repositories: Sequence[Placeable]) -> List[Placeable]:
    # The id tie-break keeps the order independent of the input order.
    return sorted(repositories, key=lambda repo: (repo.created_at, repo.id))


def golden_spiral_layout(repositories: Sequence[Placeable]) -> Dict[int, GalaxyCoordinates]:
    """
    Oldest repositories sit near the centre, newest on the outer rim; each
    successive repository advances by the golden angle.
    """
    coords: Dict[int, GalaxyCoordinates] = {}
    if not repositories:
        return coords

    ordered = _sorted_by_creation(repositories)
    oldest, newest = ordered[0].created_at, ordered[-1].created_at

    for index, repo in enumerate(ordered):
        ratio = age_ratio(repo.created_at, oldest, newest)
        radius = SPIRAL_INNER_RADIUS + ratio * (SPIRAL_OUTER_RADIUS - SPIRAL_INNER_RADIUS)
        angle = index * GOLDEN_ANGLE
        rng = SeededGenerator(seed_for(repo.id))
        coords[repo.id] = GalaxyCoordinates(
            x=clamp(0.5 + radius * math.cos(angle)),
            y=clamp(0.5 + radius * math.sin(angle)),
            z=clamp(rng.next() * SPIRAL_Z_SCALE),
            size=2 + (1 - ratio) * 1.5,
        )

    return coords


def normalize_points(points: Sequence[Point]) -> List[Point]:
    """Maps points into a unit bounding box centred on the origin."""
    min_x = min(p.x for p in points)
    min_y = min(p.y for p in points)
    width = (max(p.x for p in points) - min_x) or 1
    height = (max(p.y for p in points) - min_y) or 1
    return [Point((p.x - min_x) / width - 0.5, (p.y - min_y) / height - 0.5) for p in points]


def rotate_points(points: Sequence[Point], angle: float) -> List[Point]:
    cos, sin = math.cos(angle), math.sin(angle)
    return [Point(p.x * cos - p.y * sin, p.x * sin + p.y * cos) for p in points]


def constellation_layout(
    repositories: Sequence[Placeable],
    seed_base: int,
    templates: Sequence[ConstellationTemplate] = ZODIAC_TEMPLATES,
) -> Dict[int, GalaxyCoordinates]:
    """
    Packs repositories, oldest first, into constellation templates arranged on
    a ring around the universe centre. Templates are drawn from a seeded shuffle
    and reshuffled once the catalog is exhausted.
    """
    coords: Dict[int, GalaxyCoordinates] = {}
    if not repositories:
        return coords

    ordered = _sorted_by_creation(repositories)
    rng = SeededGenerator(seed_base or 1)
    ring_radius = 0.28 + rng.next() * 0.1
    scale_base = 0.16 + rng.next() * 0.06

    order = list(range(len(templates)))
    rng.shuffle(order)
    cursor = 0
    batch_index = 0
    repo_index = 0

    while repo_index < len(ordered):
        if cursor >= len(order):
            rng.shuffle(order)
            cursor = 0

        template = templates[order[cursor]]
        cursor += 1

        points = rotate_points(normalize_points(template.points), rng.next() * math.pi * 2)
        slot_angle = (batch_index % CONSTELLATION_RING_SLOTS) * (math.pi * 2 / CONSTELLATION_RING_SLOTS)
        angle = slot_angle + (rng.next() - 0.5) * 0.4
        center_x = 0.5 + math.cos(angle) * ring_radius + (rng.next() - 0.5) * 0.08
        center_y = 0.5 + math.sin(angle) * ring_radius + (rng.next() - 0.5) * 0.08
        scale = scale_base * (0.85 + rng.next() * 0.3)

        for point in points:
            if repo_index >= len(ordered):
                break
            repo = ordered[repo_index]
            coords[repo.id] = GalaxyCoordinates(
                x=clamp(center_x + point.x * scale),
                y=clamp(center_y + point.y * scale),
                z=clamp(0.02 + rng.next() * 0.08),
                size=2.2 + rng.next() * 0.6,
            )
            repo_index += 1

        batch_index += 1

    return coords


def spiral_arm_coords(
    center: GalaxyCoordinates,
    seed: int,
    ratio: float,
    arms: int,
    radius_scale: float,
) -> StarCoordinates:
    """Places an entity on one of the galaxy's arms; newer entities wind further out."""
    rng = SeededGenerator(seed)
    arm_index = math.floor(rng.next() * arms)
    angle = ratio * math.pi * 4 + arm_index * (2 * math.pi / arms) + rng.next() * 0.4
    radius = STAR_BASE_RADIUS + ratio * radius_scale
    return StarCoordinates(
        x=clamp(center.x + math.cos(angle) * radius),
        y=clamp(center.y + math.sin(angle) * radius),
        z=clamp(rng.next() * STAR_Z_SCALE),
    )


def clustered_commit_coords(
    center: GalaxyCoordinates,
    repository_seed: int,
    commit_seed: int,
    commit_type: str,
    ratio: float,
) -> StarCoordinates:
    """
    Groups commits of the same type in a sub-cluster next to the galaxy
    centre, then scatters each commit uniformly over a disk around it.
    """
    radius = CLUSTER_BASE_RADIUS + ratio * CLUSTER_RADIUS_SCALE

    cluster_rng = SeededGenerator(repository_seed ^ seed_for(commit_type))
    cluster_angle = cluster_rng.next() * math.pi * 2
    cluster_distance = radius * (1.2 + cluster_rng.next() * 0.6)
    cluster_x = center.x + math.cos(cluster_angle) * cluster_distance
    cluster_y = center.y + math.sin(cluster_angle) * cluster_distance
    cluster_z = center.z + (cluster_rng.next() - 0.5) * 0.03

    rng = SeededGenerator(commit_seed)
    angle = rng.next() * math.pi * 2
    distance = math.sqrt(rng.next()) * radius * 0.6
    return StarCoordinates(
        x=clamp(cluster_x + math.cos(angle) * distance),
        y=clamp(cluster_y + math.sin(angle) * distance),
        z=clamp(cluster_z + (rng.next() - 0.5) * 0.02),
    )


class LayoutEngine:
    """Applies the configured placement policies to repositories, commits and pull requests."""

    def __init__(
        self,
        galaxy_layout: GalaxyLayout = GalaxyLayout.SPIRAL,
        commit_layout: CommitLayout = CommitLayout.CLUSTERED,
    ):
        self.galaxy_layout = GalaxyLayout(galaxy_layout)
        self.commit_layout = CommitLayout(commit_layout)

    def place_repositories(
        self, repositories: Sequence[Placeable], seed_base: int = 1
    ) -> Dict[int, GalaxyCoordinates]:
        if self.galaxy_layout is GalaxyLayout.CONSTELLATION:
            return constellation_layout(repositories, seed_base)
        return golden_spiral_layout(repositories)

    def place_commit(
        self, center: GalaxyCoordinates, repository_id: int, sha: str, message: str, ratio: float
    ) -> StarPlacement:
        if self.commit_layout is CommitLayout.SPIRAL:
            coordinates = spiral_arm_coords(center, seed_for(sha), ratio, COMMIT_ARMS, COMMIT_RADIUS_SCALE)
        else:
            coordinates = clustered_commit_coords(
                center, seed_for(repository_id), seed_for(sha), classify_commit(message), ratio
            )
        return StarPlacement(coordinates, COMMIT_STAR_SIZE, commit_color(message))

    def place_pull_request(self, center: GalaxyCoordinates, pull_request_id: int, ratio: float) -> StarPlacement:
        coordinates = spiral_arm_coords(center, seed_for(pull_request_id), ratio, PR_ARMS, PR_RADIUS_SCALE)
        return StarPlacement(coordinates, PR_STAR_SIZE, PR_STAR_COLOR)
