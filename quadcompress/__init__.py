"""Quadtree image compression: recursive split-or-leaf partitioning of RGB rasters."""

from .adaptive import CompressionPlan, plan_for_target
from .metrics import ErrorMethod, calculate_error, threshold_warning
from .quadtree_core import (
    BuildReport,
    QNode,
    Quadtree,
    check_parameters,
    count_leaves,
    count_nodes,
    deserialize_quadtree,
    render_image,
    serialize_quadtree,
    tree_depth,
)

__all__ = [
    "BuildReport",
    "CompressionPlan",
    "ErrorMethod",
    "QNode",
    "Quadtree",
    "calculate_error",
    "check_parameters",
    "count_leaves",
    "count_nodes",
    "deserialize_quadtree",
    "plan_for_target",
    "render_image",
    "serialize_quadtree",
    "threshold_warning",
    "tree_depth",
]
