from typing import Optional

from ..settings import PipelineConfig
from .base import AdapterRegistry
from .icici import IciciStatementAdapter


def build_default_registry(config: Optional[PipelineConfig] = None) -> AdapterRegistry:
    reg = AdapterRegistry()
    reg.register(IciciStatementAdapter(config=config))
    return reg


registry = build_default_registry()
