"""Capability routing for forwarding endpoints"""

from typing import Dict, FrozenSet, Iterable, List, Tuple, Type

from mcp import types

from .models import Capability

Route = Tuple[Type[types.Request], Type[types.Result]]

# Request types a backend answers for each capability it advertises
CAPABILITY_ROUTES: Dict[Capability, Tuple[Route, ...]] = {
    Capability.TOOLS: (
        (types.ListToolsRequest, types.ListToolsResult),
        (types.CallToolRequest, types.CallToolResult),
    ),
    Capability.RESOURCES: (
        (types.ListResourcesRequest, types.ListResourcesResult),
        (types.ListResourceTemplatesRequest, types.ListResourceTemplatesResult),
        (types.ReadResourceRequest, types.ReadResourceResult),
    ),
    Capability.PROMPTS: (
        (types.ListPromptsRequest, types.ListPromptsResult),
        (types.GetPromptRequest, types.GetPromptResult),
    ),
}


def build_dispatch_table(
    capabilities: Iterable[Capability],
) -> Dict[Type[types.Request], Type[types.Result]]:
    """Map each forwardable request type to the result type it expects.

    Only request types belonging to the given capabilities are included.
    """
    table: Dict[Type[types.Request], Type[types.Result]] = {}
    for capability in Capability:
        if capability not in capabilities:
            continue
        for request_type, result_type in CAPABILITY_ROUTES[capability]:
            table[request_type] = result_type
    return table


def describe_capabilities(capabilities: FrozenSet[Capability]) -> List[str]:
    """Capability names in declaration order."""
    return [c.value for c in Capability if c in capabilities]
