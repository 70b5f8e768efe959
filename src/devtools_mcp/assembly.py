"""
Registry assembly.

Evaluates each provider group's activation predicate against the detected
capabilities and merges the tools of the active groups into one
ToolRegistry. Assembly runs once per process, before the listener starts.
"""

from typing import FrozenSet, Iterable, List, Optional

from common.logging import TimedLogger, get_logger
from .capabilities import Capability, CapabilityDetector, default_detector
from .errors import ErrorKind
from .host import HostContext
from .providers import AsgiRouteTools, ProviderGroup, StandardTools, WsgiRouteTools
from .tool_registry import ToolDescriptor, ToolRegistry, extract_descriptors

logger = get_logger(__name__)


def default_provider_groups(host: HostContext) -> List[ProviderGroup]:
    """Built-in provider groups, in assembly order."""
    return [
        StandardTools(host).provider_group(),
        AsgiRouteTools(host).provider_group(),
        WsgiRouteTools(host).provider_group(),
    ]


def _is_active(group: ProviderGroup, capabilities: FrozenSet[Capability]) -> bool:
    try:
        return bool(group.activation_predicate(capabilities))
    except Exception as e:
        logger.warning(
            event="capability_probe_failed",
            group=group.name,
            error_kind=ErrorKind.CAPABILITY_PROBE_FAILED.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False


def assemble_registry(
    groups: Iterable[ProviderGroup],
    capabilities: FrozenSet[Capability],
) -> ToolRegistry:
    """
    Build the registry from the groups whose predicate holds.

    Raises:
        AssemblyError: If two active groups declare the same tool name
    """
    descriptors: List[ToolDescriptor] = []

    with TimedLogger(logger, "registry_assembly"):
        for group in groups:
            if not _is_active(group, capabilities):
                logger.info(event="provider_group_skipped", group=group.name)
                continue

            group_descriptors = extract_descriptors(group.tools, group.name)
            descriptors.extend(group_descriptors)

            logger.info(
                event="provider_group_activated",
                group=group.name,
                tools_declared=len(group.tools),
                tools_extracted=len(group_descriptors),
            )

        return ToolRegistry(descriptors)


def build_registry(
    host: HostContext,
    groups: Optional[Iterable[ProviderGroup]] = None,
    detector: Optional[CapabilityDetector] = None,
) -> ToolRegistry:
    """Detect host capabilities and assemble the registry for this process."""
    detector = detector or default_detector(host)
    capabilities = detector.detect()

    if groups is None:
        groups = default_provider_groups(host)

    return assemble_registry(groups, capabilities)
