"""
Agents — one LLM call per pipeline role, output written under
ARTIFACTS_DIR/<projectId>/ and recorded in the artifact catalog.

Each agent sees the project request plus the text of every artifact the
earlier agents produced, so the backend engineer builds on the SRS, the
frontend engineer on both, and so on.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import config
from features.projects.artifacts import ArtifactCatalog
from features.projects.models import AgentName, Artifact, ArtifactType, Project, Task
from utils.llm import chat

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentProfile:
    agent: AgentName
    artifact_type: ArtifactType
    title: str
    filename: str
    system: str


PROFILES: dict[AgentName, AgentProfile] = {
    AgentName.PRODUCT_MANAGER: AgentProfile(
        agent=AgentName.PRODUCT_MANAGER,
        artifact_type=ArtifactType.SRS_DOCUMENT,
        title="Software Requirements Specification",
        filename="srs.md",
        system=(
            "You are a senior product manager. Turn the user's request into a Software "
            "Requirements Specification in markdown. Include:\n"
            "- Overview and goals\n"
            "- Feature list (table with IDs)\n"
            "- User stories with acceptance criteria\n"
            "- Data entities\n"
            "- Non-functional requirements"
        ),
    ),
    AgentName.BACKEND_ENGINEER: AgentProfile(
        agent=AgentName.BACKEND_ENGINEER,
        artifact_type=ArtifactType.SOURCE_CODE,
        title="Backend Source Code",
        filename="backend.md",
        system=(
            "You are a senior backend engineer. From the requirements, produce the backend: "
            "database schema, API endpoint list with request/response shapes, and the source "
            "code of the service. Use fenced code blocks with the file path as the first "
            "comment line of each block."
        ),
    ),
    AgentName.FRONTEND_ENGINEER: AgentProfile(
        agent=AgentName.FRONTEND_ENGINEER,
        artifact_type=ArtifactType.SOURCE_CODE,
        title="Frontend Source Code",
        filename="frontend.md",
        system=(
            "You are a senior frontend engineer. From the requirements and the backend API, "
            "produce the web client: page list, component tree and the source code. Use fenced "
            "code blocks with the file path as the first comment line of each block."
        ),
    ),
    AgentName.DEVOPS_ENGINEER: AgentProfile(
        agent=AgentName.DEVOPS_ENGINEER,
        artifact_type=ArtifactType.DEPLOYMENT_URL,
        title="Live Application",
        filename="deployment.md",
        system=(
            "You are a senior DevOps engineer. From the project's code, produce a deployment "
            "plan in markdown: infrastructure, CI/CD pipeline definition, environment "
            "variables and monitoring."
        ),
    ),
}

TEST_REPORT_SYSTEM = (
    "You are a QA lead. From the project's code, write a test report in markdown: "
    "test plan per component, the unit and end-to-end cases to run, and the quality "
    "gates a release must pass."
)

ChatFn = Callable[..., str]


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "project"


class LLMAgentRunner:
    """Callable ``(project, task) -> artifact id`` used by the dispatch consumer."""

    def __init__(self, catalog: ArtifactCatalog, artifacts_dir: Path = config.ARTIFACTS_DIR,
                 chat_fn: ChatFn = chat):
        self.catalog = catalog
        self.artifacts_dir = Path(artifacts_dir)
        self._chat = chat_fn

    async def __call__(self, project: Project, task: Task) -> str | None:
        profile = PROFILES.get(task.assigned_agent)
        if profile is None:
            raise ValueError(f"No agent profile for {task.assigned_agent}")
        log.info("[DISPATCH] %s working on %s", profile.agent.value, project.project_id)

        previous = await self.catalog.list(project.project_id)
        context = self._build_context(project, previous)
        content = await self._complete(profile.system, context)
        path = self._write(project.project_id, profile.filename, content)

        if profile.agent == AgentName.DEVOPS_ENGINEER:
            return await self._deploy(project, profile, context, path)

        artifact = await self.catalog.create(
            project.project_id,
            profile.artifact_type,
            str(path),
            title=profile.title,
            description=f"{profile.title} for {project.project_name}",
            metadata={"agent": profile.agent.value, "taskId": task.task_id, "chars": len(content)},
        )
        return artifact.artifact_id

    async def _deploy(self, project: Project, profile: AgentProfile, context: str,
                      plan_path: Path) -> str:
        """DevOps yields two artifacts: the live URL (returned) and a test report."""
        url = f"https://{slugify(project.project_name)}-{project.project_id[-6:]}.agent-builder.app"
        deployment = await self.catalog.create(
            project.project_id,
            ArtifactType.DEPLOYMENT_URL,
            url,
            title=profile.title,
            description=f"Deployed {project.project_name}",
            metadata={"agent": profile.agent.value, "plan": str(plan_path)},
        )

        report = await self._complete(TEST_REPORT_SYSTEM, context)
        report_path = self._write(project.project_id, "test-report.md", report)
        await self.catalog.create(
            project.project_id,
            ArtifactType.TEST_REPORT,
            str(report_path),
            title="Test Report",
            description="Test plan and quality gates",
            metadata={"agent": profile.agent.value},
        )
        return deployment.artifact_id

    async def _complete(self, system: str, user: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: self._chat(system, user))

    def _build_context(self, project: Project, previous: list[Artifact]) -> str:
        parts = [
            f"# Project: {project.project_name}\n",
            f"## Request\n{project.request_prompt}\n",
        ]
        for artifact in previous:
            body = self._read_artifact(artifact)
            if body:
                parts.append(f"## {artifact.title or artifact.artifact_type.value}\n{body}\n")
        return "\n".join(parts)

    def _read_artifact(self, artifact: Artifact) -> str:
        path = Path(artifact.location)
        if not path.is_file():
            return ""
        text = path.read_text(encoding="utf-8", errors="replace")
        if len(text) > config.MAX_ARTIFACT_CONTEXT_CHARS:
            text = text[:config.MAX_ARTIFACT_CONTEXT_CHARS] + "\n... (truncated)"
        return text

    def _write(self, project_id: str, filename: str, content: str) -> Path:
        out_dir = self.artifacts_dir / project_id
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / filename
        path.write_text(content, encoding="utf-8")
        log.info("Wrote %s (%d chars)", path, len(content))
        return path
