"""Live request path: resolve user text to a group and ranked chunks."""

from querylab.routing.router import QueryRouter, RankedChunk, RouteResult, select_results

__all__ = ["QueryRouter", "RankedChunk", "RouteResult", "select_results"]
