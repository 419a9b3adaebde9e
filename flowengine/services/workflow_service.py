# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Service

Loads workflow definitions and runs them through the engine.
Definitions live as JSON or YAML files in the workflows directory, or are
registered in-process.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os
import yaml
from pydantic import ValidationError as PydanticValidationError

from flowengine.core.errors import NotFoundError, ValidationError
from flowengine.core.logging import get_service_logger
from flowengine.workflow.executor import WorkflowEngine
from flowengine.workflow.models import ExecutionResult, WorkflowDefinition

logger = get_service_logger("workflows")

WORKFLOW_SUFFIXES = (".json", ".yaml", ".yml")


class WorkflowService:
    """
    Manages workflow definitions and synchronous execution.

    Responsibilities:
    - Resolve a workflow id (scoped to an organization) to its definition
    - Execute a workflow via WorkflowEngine
    """

    def __init__(self, workflows_dir: Path, engine: WorkflowEngine):
        self.workflows_dir = Path(workflows_dir)
        self.workflows_dir.mkdir(parents=True, exist_ok=True)
        self.engine = engine
        self._registered: Dict[str, WorkflowDefinition] = {}
        # path -> (mtime, parsed definition); a changed file is parsed again
        self._parsed: Dict[Path, Tuple[float, WorkflowDefinition]] = {}
        logger.info(f"WorkflowService initialized with directory: {workflows_dir}")

    def register(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        """Register a definition in-process; takes precedence over files"""
        if isinstance(definition, dict):
            definition = self._parse(definition, source="registration")
        self._registered[definition.id] = definition
        return definition

    def _parse(self, data: Dict[str, Any], source: str) -> WorkflowDefinition:
        try:
            return WorkflowDefinition.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(
                f"Invalid workflow definition in {source}: {first.get('msg')}",
                field=".".join(str(p) for p in first.get("loc", ())) or None,
            )

    async def _load_file(self, path: Path) -> WorkflowDefinition:
        mtime = (await aiofiles.os.stat(path)).st_mtime
        cached = self._parsed.get(path)
        if cached is not None and cached[0] == mtime:
            return cached[1]

        async with aiofiles.open(path, "r") as f:
            text = await f.read()
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
        definition = self._parse(data or {}, source=path.name)
        self._parsed[path] = (mtime, definition)
        return definition

    async def list_workflows(self) -> List[Dict[str, Any]]:
        """List all known workflow definitions"""
        workflows = {wf_id: wf for wf_id, wf in self._registered.items()}

        for name in sorted(await aiofiles.os.listdir(self.workflows_dir)):
            path = self.workflows_dir / name
            if path.suffix not in WORKFLOW_SUFFIXES:
                continue
            try:
                definition = await self._load_file(path)
            except (ValidationError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Skipping invalid workflow file {path.name}: {e}")
                continue
            workflows.setdefault(definition.id, definition)

        return [
            {
                "id": wf.id,
                "name": wf.name,
                "description": wf.description,
                "active": wf.active,
                "node_count": len(wf.nodes),
            }
            for wf in workflows.values()
        ]

    async def get_workflow(self, workflow_id: str, organization_id: Optional[str] = None) -> WorkflowDefinition:
        """Get a workflow definition visible to the organization"""
        definition = self._registered.get(workflow_id)

        if definition is None:
            for suffix in WORKFLOW_SUFFIXES:
                path = self.workflows_dir / f"{workflow_id}{suffix}"
                if await aiofiles.os.path.exists(path):
                    definition = await self._load_file(path)
                    break

        if definition is None:
            raise NotFoundError("Workflow", workflow_id)
        if organization_id and definition.organization_id and definition.organization_id != organization_id:
            raise NotFoundError("Workflow", workflow_id)
        return definition

    async def execute_workflow(
        self,
        workflow_id: str,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExecutionResult:
        """Run a workflow synchronously to a terminal result"""
        definition = await self.get_workflow(workflow_id, organization_id)
        if not definition.active:
            raise ValidationError(f"Workflow '{workflow_id}' is not active", field="active")

        logger.info(f"Executing workflow: {workflow_id}")
        return await self.engine.execute(
            definition.to_graph(),
            input_data or {},
            workflow_id=workflow_id,
            organization_id=organization_id,
            user_id=user_id,
            execution_id=execution_id,
            cancel_event=cancel_event,
        )
