"""Configuration package (Facade).

Re-exports the public configuration types so callers import from a single,
stable path:

	from lakehouse_orchestrator.services.config import DeploymentConfig

Static deployment data (resource declarations, workflow declarations, the
transient-error pattern table) lives here too; it is data, not control flow.
"""

from lakehouse_orchestrator.services.config.deployment_config import DeploymentConfig, GcpEndpoints
from lakehouse_orchestrator.services.config.lakehouse_resources import lakehouse_resource_specs
from lakehouse_orchestrator.services.config.retry_patterns import (
	DEFAULT_RETRY_PATTERNS,
	RetryPattern,
	RetryPatternTable,
)
from lakehouse_orchestrator.services.config.workflows import LAKEHOUSE_WORKFLOWS, WorkflowSpec

__all__ = [
	"DEFAULT_RETRY_PATTERNS",
	"DeploymentConfig",
	"GcpEndpoints",
	"LAKEHOUSE_WORKFLOWS",
	"RetryPattern",
	"RetryPatternTable",
	"WorkflowSpec",
	"lakehouse_resource_specs",
]
