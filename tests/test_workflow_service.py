# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for WorkflowService definition loading
"""

import json
import os

import pytest
import yaml

from flowengine.core.errors import NotFoundError


@pytest.fixture
def workflows_dir(workflow_service):
    return workflow_service.workflows_dir


class TestLoading:

    @pytest.mark.asyncio
    async def test_json_and_yaml_files_are_found(self, workflow_service, workflows_dir, echo_workflow,
                                                 approval_workflow):
        (workflows_dir / "echo.json").write_text(json.dumps(echo_workflow))
        (workflows_dir / "release.yaml").write_text(yaml.safe_dump(approval_workflow))

        assert (await workflow_service.get_workflow("echo")).name == "Echo"
        assert (await workflow_service.get_workflow("release")).name == "Release"
        assert [wf["id"] for wf in await workflow_service.list_workflows()] == ["echo", "release"]

    @pytest.mark.asyncio
    async def test_unchanged_file_is_parsed_once(self, workflow_service, workflows_dir, echo_workflow):
        (workflows_dir / "echo.json").write_text(json.dumps(echo_workflow))

        first = await workflow_service.get_workflow("echo")
        second = await workflow_service.get_workflow("echo")

        assert first is second

    @pytest.mark.asyncio
    async def test_edited_file_is_parsed_again(self, workflow_service, workflows_dir, echo_workflow):
        path = workflows_dir / "echo.json"
        path.write_text(json.dumps(echo_workflow))
        await workflow_service.get_workflow("echo")

        path.write_text(json.dumps(dict(echo_workflow, name="Echo v2")))
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert (await workflow_service.get_workflow("echo")).name == "Echo v2"

    @pytest.mark.asyncio
    async def test_invalid_file_is_skipped_in_listing(self, workflow_service, workflows_dir, echo_workflow):
        (workflows_dir / "echo.json").write_text(json.dumps(echo_workflow))
        (workflows_dir / "broken.json").write_text("{not json")

        assert [wf["id"] for wf in await workflow_service.list_workflows()] == ["echo"]

    @pytest.mark.asyncio
    async def test_missing_workflow(self, workflow_service):
        with pytest.raises(NotFoundError):
            await workflow_service.get_workflow("nope")
