from timeline_export.render.filter_graph import FilterGraph, FilterNode, Pad, StreamKind
from timeline_export.render.graph_builder import FilterGraphBuilder, RenderInput, RenderPlan
from timeline_export.render.invoker import RenderInvoker, classify_engine_failure

__all__ = [
    "FilterGraph",
    "FilterNode",
    "Pad",
    "StreamKind",
    "FilterGraphBuilder",
    "RenderInput",
    "RenderPlan",
    "RenderInvoker",
    "classify_engine_failure",
]
