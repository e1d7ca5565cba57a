import logging
from abc import ABC, abstractmethod
from typing import Mapping, Optional, Tuple

from ._point_match import Group, ViewId
from ._tile_graph import Tile, TileConfiguration, group_of

logger = logging.getLogger(__name__)


class LinkRemovalStrategy(ABC):
    """Picks and removes one link of an optimized tile configuration."""

    @abstractmethod
    def remove_link(
        self,
        configuration: TileConfiguration,
        tiles: Mapping[ViewId, Tile],
    ) -> Optional[Tuple[Group, Group]]:
        """Remove one link.

        Returns:
            The views on both sides of the removed link, or None if no link can
            be removed
        """
        pass


class MaxErrorLinkRemoval(LinkRemovalStrategy):
    """Removes the link carrying the match with the largest distance.

    Links of tiles with a single connection are never removed, so a tile is
    never cut off entirely. Every removal deletes an edge, so repeated
    removal ends after at most as many calls as the graph has edges.
    """

    def remove_link(self, configuration, tiles):
        worst_distance = -float("inf")
        worst_a: Optional[Tile] = None
        worst_b: Optional[Tile] = None

        for tile in configuration.tiles:
            if len(tile.connected_tiles) <= 1:
                continue
            for m in tile.matches:
                distance = m.distance
                if distance > worst_distance:
                    worst_distance = distance
                    worst_a = tile
                    worst_b = tile.find_connected_tile(m)

        if worst_a is None or worst_b is None:
            logger.warning("Cannot remove any more links without disconnecting tiles")
            return None

        worst_a.remove_connected_tile(worst_b)
        group_a = group_of(worst_a, tiles)
        group_b = group_of(worst_b, tiles)
        logger.info(f"Removed link from [{group_a}] to [{group_b}] (max match distance {worst_distance:.4f})")
        return group_a, group_b
