"""
Flow registry - validated flow definitions by slug
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.config import settings
from ..flow.validator import load_flow_definition
from ..models.flow import FlowDefinition

logger = logging.getLogger(__name__)


class FlowRegistry:
    """
    Holds every flow the engine can run.

    Flows are validated once, when registered. An invalid flow raises
    FlowDefinitionError and is never stored.
    """

    def __init__(self, tool_names: Optional[Iterable[str]] = None):
        self.tool_names = list(tool_names) if tool_names is not None else None
        self._flows: Dict[str, FlowDefinition] = {}

    def register(self, data: Union[Dict[str, Any], FlowDefinition]) -> FlowDefinition:
        flow = load_flow_definition(data, self.tool_names)
        if flow.slug in self._flows:
            logger.info(f"Replacing flow '{flow.slug}'")
        self._flows[flow.slug] = flow
        return flow

    def load_directory(self, directory: Optional[str] = None) -> List[FlowDefinition]:
        """
        Register every *.json flow of a directory.

        Raises:
            FlowDefinitionError: on the first invalid flow
        """
        path = Path(directory or settings.FLOWS_DIR)
        if not path.is_dir():
            logger.warning(f"Flows directory not found: {path}")
            return []

        loaded = []
        for file in sorted(path.glob("*.json")):
            with open(file, encoding="utf-8") as f:
                data = json.load(f)
            loaded.append(self.register(data))
            logger.info(f"Loaded flow '{loaded[-1].slug}' from {file.name}")
        return loaded

    def get(self, slug: str) -> Optional[FlowDefinition]:
        return self._flows.get(slug)

    def list(self) -> List[FlowDefinition]:
        return list(self._flows.values())

    def default_flow(self) -> Optional[FlowDefinition]:
        """The flow new users start on (first flagged one, else the first registered)"""
        for flow in self._flows.values():
            if flow.config.default_for_new_users:
                return flow
        return next(iter(self._flows.values()), None)

    def __contains__(self, slug: str) -> bool:
        return slug in self._flows

    def __len__(self) -> int:
        return len(self._flows)
