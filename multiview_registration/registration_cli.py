"""Globally optimize views connected by pairwise links read from a JSON file.

The links file looks like::

    {
      "links": [
        {"first": [[0, 0]], "second": [[0, 1]],
         "bounding_box": [[0, 0, 0], [511, 511, 511]],
         "offset": [100, 0, 0], "quality": 0.9}
      ],
      "views": [
        {"view": [0, 0], "transform": [[1, 0, 0, 0], [0, 1, 0, 0], [0, 0, 1, 0], [0, 0, 0, 1]],
         "bounding_box": [[0, 0, 0], [511, 511, 511]]}
      ]
    }

A link has either an `offset` (translation of the second group relative to
the first) or a full 4x4 `transform`. The `views` metadata is only needed by
the two-round methods, which derive weak links from it. Without it a
two-round method falls back to its single round counterpart.

Example::

    python -m multiview_registration.registration_cli --links-file links.json \\
        --fixed-views '[[0, 0]]' --model translation --output-file transforms.json

The transforms are written even if the optimization missed its error
targets. The status in the output says so and the exit code is 1.
"""
import contextlib
import logging
import sys
from typing import List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, model_validator
from pydantic_settings import CliApp

from multiview_registration.benchmarking_util import profile_context
from multiview_registration.parameters import LinkOptimizationParameters
from multiview_registration.registration import (
    DisconnectedError,
    ErrorKind,
    Group,
    ImageCorrelationPointMatchCreator,
    Link,
    MetadataWeakLinkFactory,
    TranslationModel,
    ViewId,
    matrix_to_model,
    run_global_optimization,
)

logger = logging.getLogger(__name__)

Vector = Tuple[float, float, float]


class LinkRecord(BaseModel):
    first: List[Tuple[int, int]]
    second: List[Tuple[int, int]]
    bounding_box: Tuple[Vector, Vector]
    offset: Optional[Vector] = None
    transform: Optional[List[List[float]]] = None
    quality: float = 1.0

    @model_validator(mode="after")
    def _offset_or_transform(self) -> "LinkRecord":
        if (self.offset is None) == (self.transform is None):
            raise ValueError("A link needs exactly one of offset and transform")
        return self

    def to_link(self) -> Link:
        if self.offset is not None:
            transform = TranslationModel()
            transform.translation = np.array(self.offset, dtype=np.float64)
        else:
            transform = matrix_to_model(_homogeneous(self.transform))
        return Link(
            Group(ViewId(*v) for v in self.first),
            Group(ViewId(*v) for v in self.second),
            (np.array(self.bounding_box[0]), np.array(self.bounding_box[1])),
            transform,
            self.quality,
        )


class ViewRecord(BaseModel):
    view: Tuple[int, int]
    transform: List[List[float]]
    bounding_box: Tuple[Vector, Vector]


class LinksFile(BaseModel):
    links: List[LinkRecord]
    views: List[ViewRecord] = []


class ViewTransform(BaseModel):
    timepoint: int
    setup: int
    transform: List[List[float]]


class RemovedLink(BaseModel):
    first: List[Tuple[int, int]]
    second: List[Tuple[int, int]]


class RegistrationOutput(BaseModel):
    transforms: List[ViewTransform]
    status: ErrorKind = ErrorKind.OK
    error: float = 0.0
    min_error: float = 0.0
    max_error: float = 0.0
    removed_links: List[RemovedLink] = []

    @property
    def ok(self) -> bool:
        return self.status == ErrorKind.OK


def _homogeneous(rows: List[List[float]]) -> np.ndarray:
    """4x4 matrix from a 3x4 or 4x4 nested list."""
    matrix = np.asarray(rows, dtype=np.float64)
    if matrix.shape == (3, 4):
        matrix = np.vstack([matrix, [0.0, 0.0, 0.0, 1.0]])
    if matrix.shape != (4, 4):
        raise ValueError(f"Expected a 3x4 or 4x4 matrix, got shape {matrix.shape}")
    return matrix


def _views(group: Group) -> List[Tuple[int, int]]:
    return [(v.timepoint, v.setup) for v in sorted(group)]


def load_links_file(path: str) -> LinksFile:
    with open(path) as f:
        return LinksFile.model_validate_json(f.read())


def optimize_links(params: LinkOptimizationParameters, links_file: LinksFile) -> RegistrationOutput:
    """Run the configured global optimization over the links.

    A two-round method needs the view metadata. Without it the single round
    method with the same link removal runs instead.

    Raises:
        DisconnectedError: If no view is connected or fixed
    """
    links = [record.to_link() for record in links_file.links]
    min_quality = params.min_quality if params.min_quality is not None else -float("inf")
    creator = ImageCorrelationPointMatchCreator(links, min_quality)

    weak_link_factory = None
    if links_file.views:
        weak_link_factory = MetadataWeakLinkFactory(
            {ViewId(*r.view): _homogeneous(r.transform) for r in links_file.views},
            {ViewId(*r.view): (np.array(r.bounding_box[0]), np.array(r.bounding_box[1])) for r in links_file.views},
        )
    elif params.method.is_two_round:
        logger.warning(
            f"Method {params.method.value} needs view metadata, which the links file does not have. "
            f"Running {params.method.one_round.value} instead"
        )
        params = params.model_copy(update={"method": params.method.one_round})

    fixed_views = [ViewId(*v) for v in params.fixed_views]
    groups = [Group(ViewId(*v) for v in g) for g in params.groups]

    result = run_global_optimization(params, creator, fixed_views, groups, weak_link_factory=weak_link_factory)
    if result is None:
        raise DisconnectedError("No view is connected by a link or fixed, nothing to optimize")

    for a, b in result.removed_pairs:
        logger.info(f"Removed inconsistent link [{a}] <-> [{b}]")
    if not result.ok:
        logger.warning(
            f"Global optimization did not converge ({result.status.value}): avg error {result.error:.4f}, "
            f"max error {result.max_error:.4f}"
        )

    return RegistrationOutput(
        transforms=[
            ViewTransform(timepoint=view.timepoint, setup=view.setup, transform=matrix.tolist())
            for view, matrix in sorted(result.matrices.items(), key=lambda kv: kv[0])
        ],
        status=result.status,
        error=result.error,
        min_error=result.min_error,
        max_error=result.max_error,
        removed_links=[RemovedLink(first=_views(a), second=_views(b)) for a, b in result.removed_pairs],
    )


def main(args: list[str]) -> None:
    params = CliApp.run(LinkOptimizationParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)

    profiling = profile_context(params.profile_output) if params.profile_output else contextlib.nullcontext()
    with profiling:
        output = optimize_links(params, load_links_file(params.links_file))

    if params.output_file:
        with open(params.output_file, "w") as f:
            f.write(output.model_dump_json(indent=2))
    else:
        print(output.model_dump_json(indent=2))

    if not output.ok:
        sys.exit(1)


if __name__ == "__main__":
    main(sys.argv[1:])
