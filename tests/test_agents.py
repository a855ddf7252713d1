from __future__ import annotations

import asyncio

from activities.agents import LLMAgentRunner, slugify
from features.projects.artifacts import ArtifactCatalog
from features.projects.models import ArtifactType, Project, build_seed_tasks


class ScriptedChat:
    def __init__(self):
        self.prompts = []

    def __call__(self, system, user, **kwargs):
        self.prompts.append((system, user))
        return f"# Output {len(self.prompts)}\n"


def _setup(store, tmp_path):
    project = Project(project_id="proj-abc123", user_id="user-1", project_name="My Blog",
                      request_prompt="Build a blog platform with comments")
    asyncio.run(store.put_project(project))
    chat = ScriptedChat()
    runner = LLMAgentRunner(ArtifactCatalog(store), artifacts_dir=tmp_path, chat_fn=chat)
    return project, runner, chat


def test_product_manager_writes_srs(store, tmp_path):
    project, runner, chat = _setup(store, tmp_path)
    pm_task = build_seed_tasks(project.project_id)[0]

    artifact_id = asyncio.run(runner(project, pm_task))

    artifact = asyncio.run(store.get_artifact(project.project_id, artifact_id))
    assert artifact.artifact_type == ArtifactType.SRS_DOCUMENT
    assert (tmp_path / project.project_id / "srs.md").read_text() == "# Output 1\n"
    assert artifact.location == str(tmp_path / project.project_id / "srs.md")
    assert "Build a blog platform with comments" in chat.prompts[0][1]


def test_later_agents_see_earlier_artifacts(store, tmp_path):
    project, runner, chat = _setup(store, tmp_path)
    pm_task, backend_task = build_seed_tasks(project.project_id)[:2]

    async def scenario():
        await runner(project, pm_task)
        return await runner(project, backend_task)

    artifact_id = asyncio.run(scenario())

    artifact = asyncio.run(store.get_artifact(project.project_id, artifact_id))
    assert artifact.artifact_type == ArtifactType.SOURCE_CODE
    assert "# Output 1" in chat.prompts[1][1]


def test_devops_produces_deployment_and_test_report(store, tmp_path):
    project, runner, chat = _setup(store, tmp_path)
    devops_task = build_seed_tasks(project.project_id)[3]

    artifact_id = asyncio.run(runner(project, devops_task))

    artifacts = asyncio.run(store.list_artifacts(project.project_id))
    by_type = {a.artifact_type: a for a in artifacts}
    assert set(by_type) == {ArtifactType.DEPLOYMENT_URL, ArtifactType.TEST_REPORT}
    assert by_type[ArtifactType.DEPLOYMENT_URL].artifact_id == artifact_id
    assert by_type[ArtifactType.DEPLOYMENT_URL].location.startswith("https://my-blog-")
    assert len(chat.prompts) == 2


def test_slugify():
    assert slugify("My  Blog!") == "my-blog"
    assert slugify("???") == "project"
