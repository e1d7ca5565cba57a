"""Tiles, the optimization graph, and its solver.

A `Tile` owns one transform model and the point matches leading away from it.
Every match between two tiles exists twice, once per tile, and both copies
share their `Point` objects: when a tile applies its model it updates the
world coordinates its neighbors fit against.

`TileConfiguration` holds the tiles taking part in an optimization, which of
them are fixed, and runs pre-alignment and the iterative minimization.
"""
import logging
from multiprocessing.pool import ThreadPool
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import networkx as nx
import numpy as np
import pandas as pd

from ..parameters import ConvergenceStrategy
from ._convergence import ErrorStatistic
from ._errors import ErrorKind
from ._models import TransformModel
from ._point_match import Group, PointMatch, ViewId, flip_all

logger = logging.getLogger(__name__)


class Tile:
    """Optimization unit: one model shared by all views mapped to this tile."""

    def __init__(self, model: TransformModel):
        self.model = model
        self.matches: List[PointMatch] = []
        # dict as an insertion ordered set
        self._connected: Dict["Tile", None] = {}
        self.distance = 0.0

    @property
    def connected_tiles(self) -> List["Tile"]:
        return list(self._connected)

    def add_matches(self, matches: Iterable[PointMatch]) -> None:
        self.matches.extend(matches)

    def add_connected_tile(self, tile: "Tile") -> None:
        self._connected[tile] = None

    def is_connected_to(self, tile: "Tile") -> bool:
        return tile in self._connected

    def remove_connected_tile(self, tile: "Tile") -> bool:
        """Disconnect both tiles and drop the matches between them on both sides.

        Returns:
            False if the tiles were not connected
        """
        if tile not in self._connected:
            return False
        mine = {id(m.p1) for m in self.matches}
        theirs = {id(m.p1) for m in tile.matches}
        del self._connected[tile]
        tile._connected.pop(self, None)
        self.matches = [m for m in self.matches if id(m.p2) not in theirs]
        tile.matches = [m for m in tile.matches if id(m.p2) not in mine]
        return True

    def find_connected_tile(self, match: PointMatch) -> Optional["Tile"]:
        """The connected tile that owns the other end of `match`."""
        for tile in self._connected:
            for m in tile.matches:
                if m.p1 is match.p2:
                    return tile
        return None

    def matches_to(self, tile: "Tile") -> List[PointMatch]:
        theirs = {id(m.p1) for m in tile.matches}
        return [m for m in self.matches if id(m.p2) in theirs]

    def set_match_weight(self, match: PointMatch, weight: float) -> None:
        """Set the weight of one of this tile's matches and of its flipped twin."""
        if weight < 0:
            raise ValueError(f"PointMatch weight must be >= 0, got {weight}")
        match.weight = float(weight)
        other = self.find_connected_tile(match)
        if other is None:
            return
        for m in other.matches:
            if m.p1 is match.p2 and m.p2 is match.p1:
                m.weight = float(weight)

    def fit_model(self, matches: Optional[Sequence[PointMatch]] = None) -> ErrorKind:
        """Fit the model to the matches (all own matches by default). On failure the model is unchanged."""
        return self.model.try_fit(self.matches if matches is None else matches)

    def apply(self) -> None:
        """Move this tile's points to world space with the current model."""
        if not self.matches:
            return
        local = np.array([m.p1.local for m in self.matches])
        world = self.model.apply_many(local)
        for m, w in zip(self.matches, world):
            m.p1.world = w

    def update_cost(self) -> None:
        """Set `distance` to the weighted mean match distance."""
        if not self.matches:
            self.distance = 0.0
            self.model.cost = 0.0
            return
        d = np.array([m.distance for m in self.matches])
        w = np.array([m.weight for m in self.matches])
        sw = np.sum(w)
        self.distance = float(np.sum(d * w) / sw) if sw > 0 else float(np.mean(d))
        self.model.cost = self.distance

    def __repr__(self) -> str:
        return f"Tile({self.model!r}, {len(self.matches)} matches, {len(self._connected)} connected)"


def connect_tiles(tile_a: Tile, tile_b: Tile, matches: List[PointMatch]) -> None:
    """Insert matches (p1 in tile_a) into both tiles and connect them.

    Nothing happens for an empty match list.
    """
    if not matches:
        return
    tile_a.add_matches(matches)
    tile_b.add_matches(flip_all(matches))
    tile_a.add_connected_tile(tile_b)
    tile_b.add_connected_tile(tile_a)


def set_link_weight(tile_a: Tile, tile_b: Tile, weight: float) -> None:
    """Set the weight of every match between two connected tiles, in both directions."""
    for m in tile_a.matches_to(tile_b):
        tile_a.set_match_weight(m, weight)


def assign_views_to_tiles(
    prototype: TransformModel,
    views: Sequence[ViewId],
    groups: Sequence[Group],
) -> Dict[ViewId, Tile]:
    """One tile per group and one per remaining view, each with a copy of `prototype`.

    Raises:
        RuntimeError: If a view is part of two groups
    """
    tiles: Dict[ViewId, Tile] = {}
    remaining = set(views)
    for group in groups:
        tile = Tile(prototype.copy())
        for view in group:
            if view in tiles:
                raise RuntimeError(
                    f"{view} is part of two groups, overlapping groups must be merged first"
                )
            tiles[view] = tile
            remaining.discard(view)
    for view in sorted(remaining):
        tiles[view] = Tile(prototype.copy())
    return tiles


def tile_graph(tiles: Iterable[Tile]) -> nx.Graph:
    """Undirected graph of the given tiles and their connections among each other."""
    graph = nx.Graph()
    tiles = list(dict.fromkeys(tiles))
    graph.add_nodes_from(tiles)
    for tile in tiles:
        for other in tile.connected_tiles:
            if other in graph:
                graph.add_edge(tile, other)
    return graph


def identify_connected_graphs(tiles: Iterable[Tile]) -> List[List[Tile]]:
    """Connected components, each in input order, ordered by their first tile."""
    tiles = list(dict.fromkeys(tiles))
    order = {t: i for i, t in enumerate(tiles)}
    components = [
        sorted(c, key=order.__getitem__) for c in nx.connected_components(tile_graph(tiles))
    ]
    return sorted(components, key=lambda c: order[c[0]])


def group_of(tile: Tile, tiles: Mapping[ViewId, Tile]) -> Group:
    """All views that map to `tile`."""
    return Group(frozenset(v for v, t in tiles.items() if t is tile))


class TileConfiguration:
    """The tiles of one optimization, the fixed subset and the resulting errors."""

    def __init__(self):
        self.tiles: List[Tile] = []
        self.fixed_tiles: List[Tile] = []
        self.error = float("inf")
        self.min_error = float("inf")
        self.max_error = 0.0
        self.iterations = 0

    def add_tile(self, tile: Tile) -> None:
        if tile not in self.tiles:
            self.tiles.append(tile)

    def add_tiles(self, tiles: Iterable[Tile]) -> None:
        for tile in tiles:
            self.add_tile(tile)

    def fix_tile(self, tile: Tile) -> None:
        if tile not in self.fixed_tiles:
            self.fixed_tiles.append(tile)

    def is_fixed(self, tile: Tile) -> bool:
        return any(tile is f for f in self.fixed_tiles)

    @property
    def free_tiles(self) -> List[Tile]:
        return [t for t in self.tiles if not self.is_fixed(t)]

    def update_errors(self) -> None:
        """Mean, min and max over the tiles' weighted mean match distances."""
        if not self.tiles:
            self.error = self.min_error = self.max_error = 0.0
            return
        for tile in self.tiles:
            tile.update_cost()
        distances = [t.distance for t in self.tiles]
        self.error = float(np.mean(distances))
        self.min_error = float(np.min(distances))
        self.max_error = float(np.max(distances))

    def pre_align(self) -> List[Tile]:
        """Give every tile an initial model from its already aligned neighbors.

        Alignment spreads breadth first from the fixed tiles. A connected
        component without a fixed tile starts from its first tile.

        Returns:
            Tiles whose model could not be fit from their aligned neighbors
        """
        graph = tile_graph(self.tiles)
        owner = {id(m.p1): tile for tile in self.tiles for m in tile.matches}
        unaligned: List[Tile] = []

        for component in identify_connected_graphs(self.tiles):
            sources = [t for t in component if self.is_fixed(t)] or [component[0]]
            aligned = set(sources)
            for tile in sources:
                tile.apply()

            layers = iter(nx.bfs_layers(graph, sources))
            next(layers)
            for layer in layers:
                for tile in layer:
                    matches = [m for m in tile.matches if owner.get(id(m.p2)) in aligned]
                    status = tile.fit_model(matches)
                    if status != ErrorKind.OK:
                        logger.warning(f"Pre-alignment could not fit {tile!r}: {status.value}")
                        unaligned.append(tile)
                    tile.apply()
                    aligned.add(tile)

        return unaligned

    def _update_tile(self, tile: Tile) -> None:
        if tile.fit_model() == ErrorKind.OK:
            tile.apply()

    def optimize(self, convergence: ConvergenceStrategy, num_threads: int = 1) -> ErrorKind:
        """Gauss-Seidel minimization of the match distances over all free tiles.

        Stops after `max_iterations` or, once the error is at most `max_error`,
        as soon as it plateaus. With several threads, tiles of one color of a
        greedy graph coloring are updated concurrently. No two such tiles share
        a match, and every color class finishes before the next one starts.

        Returns:
            OK, or NOT_CONVERGED if the final error is above `max_error`
        """
        free = self.free_tiles
        self.update_errors()
        if not free:
            self.iterations = 0
            return ErrorKind.OK if convergence.is_converged(self.error) else ErrorKind.NOT_CONVERGED
        statistic = ErrorStatistic(convergence.max_plateau_width + 1)

        pool: Optional[ThreadPool] = None
        if num_threads > 1 and len(free) > 1:
            colors = nx.greedy_color(tile_graph(free), strategy="largest_first")
            classes: Dict[int, List[Tile]] = {}
            for tile in free:
                classes.setdefault(colors[tile], []).append(tile)
            batches = [classes[c] for c in sorted(classes)]
            pool = ThreadPool(processes=num_threads)
            logger.debug(f"Updating {len(free)} tiles in {len(batches)} color classes with {num_threads} threads")
        else:
            batches = [free]

        try:
            i = 0
            proceed = i < convergence.max_iterations
            while proceed:
                for batch in batches:
                    if pool is not None and len(batch) > 1:
                        pool.map(self._update_tile, batch)
                    else:
                        for tile in batch:
                            self._update_tile(tile)
                self.update_errors()
                statistic.add(self.error)

                if i > convergence.max_plateau_width:
                    proceed = not convergence.is_converged(self.error)
                    if not proceed:
                        proceed = not statistic.is_plateau(convergence.max_plateau_width)
                i += 1
                proceed = proceed and i < convergence.max_iterations
                if i % 1000 == 0:
                    logger.debug(f"Iteration {i}: avg error {self.error:.6f}")
        finally:
            if pool is not None:
                pool.close()
                pool.join()

        self.iterations = i
        logger.debug(f"Optimization stopped after {i} iterations with avg error {self.error:.6f}")
        if not convergence.is_converged(self.error):
            return ErrorKind.NOT_CONVERGED
        return ErrorKind.OK

    def connected_components(self) -> List[List[Tile]]:
        return identify_connected_graphs(self.tiles)


def link_error_report(tiles: Mapping[ViewId, Tile]) -> pd.DataFrame:
    """Per connected tile pair: the views on both sides, the number of matches and their distances.

    Returns:
        DataFrame sorted by mean distance, worst links first
    """
    unique = list(dict.fromkeys(tiles.values()))
    names = {t: str(group_of(t, tiles)) for t in unique}
    index = {t: i for i, t in enumerate(unique)}

    rows = []
    for tile in unique:
        for other in tile.connected_tiles:
            if other not in index or index[other] <= index[tile]:
                continue
            matches = tile.matches_to(other)
            distances = np.array([m.distance for m in matches]) if matches else np.zeros(0)
            rows.append({
                "views_a": names[tile],
                "views_b": names[other],
                "num_matches": len(matches),
                "mean_distance": float(distances.mean()) if len(distances) else np.nan,
                "max_distance": float(distances.max()) if len(distances) else np.nan,
            })

    columns = ["views_a", "views_b", "num_matches", "mean_distance", "max_distance"]
    report = pd.DataFrame(rows, columns=columns)
    return report.sort_values("mean_distance", ascending=False, ignore_index=True)
