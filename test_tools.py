"""
Built-in Tool Tests

GitHub calls go through httpx.MockTransport and SMTP through a mock factory,
so nothing here touches the network.

Test list:
1. test_github_create_repo - Request shape and result record
2. test_github_failures - Missing token, API errors, transport errors
3. test_github_add_file - Owner lookup, base64 content, commit record
4. test_gmail_send_email - SMTP conversation and result record
5. test_gmail_failures - Bad recipient, missing credentials, SMTP errors
6. test_file_creator - Markdown documents in the workspace
7. test_default_registry - The four built-in tools
8. test_plan_with_builtin_tools - Document -> GitHub, then a bad email
"""

import base64
import json
import smtplib
import sys
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from config import GitHubConfig, GmailConfig, get_default_config
from execution import ExecutionEngine
from schemas import PlanStatus
from tools import FileCreatorTools, GitHubTools, GmailTools, create_default_tools
from workspace import WorkspaceManager


# =============================================================================
# FIXTURES
# =============================================================================

class FakeGitHub:
    """Just enough of the GitHub REST API for the tools."""

    def __init__(self):
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "GET" and path == "/user":
            return httpx.Response(200, json={"login": "octo"})

        if request.method == "POST" and path == "/user/repos":
            body = json.loads(request.content)
            if body["name"] == "taken":
                return httpx.Response(422, json={"message": "name already exists on this account"})
            return httpx.Response(201, json={
                "id": 1296269,
                "name": body["name"],
                "full_name": f"octo/{body['name']}",
                "description": body.get("description"),
                "html_url": f"https://github.com/octo/{body['name']}",
                "clone_url": f"https://github.com/octo/{body['name']}.git",
                "created_at": "2026-01-01T00:00:00Z",
                "private": False,
            })

        if request.method == "PUT" and path.startswith("/repos/"):
            body = json.loads(request.content)
            file_path = path.split("/contents/", 1)[1]
            return httpx.Response(201, json={
                "content": {
                    "name": file_path.rsplit("/", 1)[-1],
                    "path": file_path,
                    "sha": "abc123",
                    "size": len(base64.b64decode(body["content"])),
                    "html_url": f"https://github.com{path}",
                },
                "commit": {"sha": "def456", "message": body["message"]},
            })

        return httpx.Response(404, json={"message": "Not Found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def github(fake_github, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "test-token")
    return GitHubTools(GitHubConfig(), transport=fake_github.transport())


def smtp_factory() -> MagicMock:
    """Stand-in for smtplib.SMTP that lets exceptions out of the with block."""
    factory = MagicMock()
    factory.return_value.__exit__.return_value = False
    return factory


@pytest.fixture
def gmail_env(monkeypatch):
    monkeypatch.setenv("GMAIL_EMAIL", "me@gmail.com")
    monkeypatch.setenv("GMAIL_APP_PASSWORD", "app-password")


# =============================================================================
# TEST 1-3: GitHub
# =============================================================================

@pytest.mark.asyncio
async def test_github_create_repo(github, fake_github):
    """
    Test 1: GitHub.createRepo.

    Verifies:
    - POST /user/repos with the name and description
    - Bearer token and API version headers are sent
    - The result carries the repository URLs
    """
    result = await github.create_repo("demo", description="A demo")

    assert result.success, result.error
    assert result.result["full_name"] == "octo/demo"
    assert result.result["html_url"] == "https://github.com/octo/demo"
    assert result.result["clone_url"] == "https://github.com/octo/demo.git"
    assert "private" not in result.result

    request = fake_github.requests[0]
    assert request.method == "POST"
    assert request.headers["Authorization"] == "Bearer test-token"
    assert request.headers["X-GitHub-Api-Version"] == "2022-11-28"
    assert json.loads(request.content) == {"name": "demo", "description": "A demo"}

    print("✓ Test 1 passed: Repository created")


@pytest.mark.asyncio
async def test_github_failures(fake_github, monkeypatch):
    """
    Test 2: GitHub failures come back as values.

    Verifies:
    - No token: failure naming the environment variable, no request made
    - API error: status code and GitHub's message
    - Transport error: failure, not an exception
    """
    monkeypatch.delenv("AGENTICHQ_TEST_TOKEN", raising=False)
    tools = GitHubTools(GitHubConfig(token_env="AGENTICHQ_TEST_TOKEN"), transport=fake_github.transport())
    result = await tools.create_repo("demo")
    assert not result.success
    assert result.error == "GitHub token not configured. Set AGENTICHQ_TEST_TOKEN."
    assert fake_github.requests == []

    monkeypatch.setenv("AGENTICHQ_TEST_TOKEN", "t")
    result = await tools.create_repo("taken")
    assert not result.success
    assert "422" in result.error
    assert "name already exists" in result.error

    def broken(request):
        raise httpx.ConnectError("connection refused", request=request)

    tools = GitHubTools(GitHubConfig(token_env="AGENTICHQ_TEST_TOKEN"), transport=httpx.MockTransport(broken))
    result = await tools.add_file("octo/demo", "a.md", "x")
    assert not result.success
    assert "connection refused" in result.error

    print("✓ Test 2 passed: GitHub failures reported")


@pytest.mark.asyncio
async def test_github_add_file(github, fake_github):
    """
    Test 3: GitHub.addFile.

    Verifies:
    - A bare repo name is resolved to the token's user (looked up once)
    - Content is sent base64-encoded with a default commit message
    - "owner/name" skips the lookup
    """
    result = await github.add_file("demo", "docs/README.md", "# Hi")

    assert result.success, result.error
    assert result.result["content"]["path"] == "docs/README.md"
    assert result.result["commit"]["message"] == "Add docs/README.md"

    lookup, put = fake_github.requests
    assert lookup.url.path == "/user"
    assert put.method == "PUT"
    assert put.url.path == "/repos/octo/demo/contents/docs/README.md"
    assert base64.b64decode(json.loads(put.content)["content"]).decode() == "# Hi"

    result = await github.add_file("someone/else", "a.md", "x", message="Initial commit")
    assert result.success
    assert fake_github.requests[-1].url.path == "/repos/someone/else/contents/a.md"
    assert result.result["commit"]["message"] == "Initial commit"
    assert [r.url.path for r in fake_github.requests].count("/user") == 1

    print("✓ Test 3 passed: File added to repository")


# =============================================================================
# TEST 4-5: Gmail
# =============================================================================

@pytest.mark.asyncio
async def test_gmail_send_email(gmail_env):
    """
    Test 4: Gmail.sendEmail.

    Verifies:
    - STARTTLS, login with the app password, one message sent
    - Headers of the sent message
    - Result has an id, the recipient and the SENT label
    """
    factory = smtp_factory()
    tools = GmailTools(GmailConfig(), smtp_factory=factory)

    result = await tools.send_email("you@example.com", "Notes", "Here are the notes.")

    assert result.success, result.error
    factory.assert_called_once_with("smtp.gmail.com", 587)
    server = factory.return_value.__enter__.return_value
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("me@gmail.com", "app-password")

    message = server.send_message.call_args[0][0]
    assert message["To"] == "you@example.com"
    assert message["From"] == "me@gmail.com"
    assert message["Subject"] == "Notes"

    assert result.result["to"] == "you@example.com"
    assert result.result["labelIds"] == ["SENT"]
    assert result.result["id"] == message["Message-ID"]
    assert result.result["snippet"] == "Here are the notes."

    print("✓ Test 4 passed: Email sent")


@pytest.mark.asyncio
async def test_gmail_failures(gmail_env, monkeypatch):
    """
    Test 5: Gmail failures come back as values.

    Verifies:
    - Malformed address -> "invalid recipient" without connecting
    - Server refuses the recipient -> "invalid recipient"
    - Bad login and connection errors -> descriptive failures
    - Missing credentials name both environment variables
    """
    factory = smtp_factory()
    tools = GmailTools(GmailConfig(), smtp_factory=factory)

    result = await tools.send_email("not-an-address", "s", "b")
    assert result.error == "invalid recipient"
    factory.assert_not_called()

    server = factory.return_value.__enter__.return_value
    server.send_message.side_effect = smtplib.SMTPRecipientsRefused({"you@example.com": (550, b"No such user")})
    result = await tools.send_email("you@example.com", "s", "b")
    assert result.error == "invalid recipient"

    server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Bad credentials")
    result = await tools.send_email("you@example.com", "s", "b")
    assert not result.success
    assert "GMAIL_APP_PASSWORD" in result.error

    factory.side_effect = OSError("Network is unreachable")
    result = await tools.send_email("you@example.com", "s", "b")
    assert result.error == "Failed to send email: Network is unreachable"

    monkeypatch.delenv("GMAIL_APP_PASSWORD")
    result = await GmailTools(GmailConfig(), smtp_factory=smtp_factory()).send_email("you@example.com", "s", "b")
    assert result.error == "Gmail credentials not configured. Set GMAIL_EMAIL and GMAIL_APP_PASSWORD."

    print("✓ Test 5 passed: Gmail failures reported")


# =============================================================================
# TEST 6: FileCreator
# =============================================================================

@pytest.mark.asyncio
async def test_file_creator(tmp_path):
    """
    Test 6: FileCreator.createMarkdown.

    Verifies:
    - ".md" is appended when missing
    - The document record has sequential ids and the full contents
    - The file is on disk and indexed
    - Paths escaping the workspace fail
    """
    workspace = WorkspaceManager(tmp_path)
    tools = FileCreatorTools(workspace)

    result = await tools.create_markdown("notes", "# Notes\n")
    assert result.success, result.error
    record = result.result
    assert record["id"] == 1
    assert record["fileName"] == "notes.md"
    assert record["content"] == "# Notes\n"
    assert record["size"] == 8
    assert Path(record["localPath"]).read_text() == "# Notes\n"

    result = await tools.create_markdown("sub/README.md", "hi")
    assert result.result["id"] == 2
    assert workspace.list_files() == ["notes.md", "sub/README.md"]
    assert workspace.get_document_path(2) == workspace.path / "sub" / "README.md"
    assert workspace.get_stats()["file_count"] == 2

    result = await tools.create_markdown("../outside", "x")
    assert not result.success
    assert "escape" in result.error
    assert not (tmp_path.parent / "outside.md").exists()

    # Ids continue after a restart
    result = await FileCreatorTools(WorkspaceManager(tmp_path)).create_markdown("again", "x")
    assert result.result["id"] == 3

    print("✓ Test 6 passed: Markdown documents created")


# =============================================================================
# TEST 7-8: Registry And A Real Plan
# =============================================================================

def test_default_registry(tmp_path):
    """
    Test 7: Built-in registry.

    Verifies:
    - Exactly the four built-in tools, with their required parameters
    - Referenced output fields for repository and document results
    """
    config = get_default_config()
    config.tools.files.base = str(tmp_path)
    registry = create_default_tools(config)

    assert [t.name for t in registry.list_tools()] == [
        "GitHub.createRepo",
        "GitHub.addFile",
        "Gmail.sendEmail",
        "FileCreator.createMarkdown",
    ]
    assert registry.output_field("GitHub.createRepo") == "html_url"
    assert registry.output_field("FileCreator.createMarkdown") == "content"

    valid, error = registry.validate_call("GitHub.addFile", {"repo": "demo", "path": "a.md"})
    assert not valid
    assert error == "Missing required parameter: content"

    assert "Gmail.sendEmail(to, subject, body) - Send an email via Gmail" in registry.describe_tools()

    print("✓ Test 7 passed: Default registry complete")


@pytest.mark.asyncio
async def test_plan_with_builtin_tools(tmp_path, fake_github, github, gmail_env):
    """
    Test 8: A plan across providers.

    Verifies:
    - The markdown written in step 0 is what step 1 pushes to GitHub
    - A plan mailing a bad address fails with "invalid recipient"
    """
    registry = create_default_tools(
        github=github,
        gmail=GmailTools(GmailConfig(), smtp_factory=smtp_factory()),
        files=FileCreatorTools(WorkspaceManager(tmp_path)),
    )
    engine = ExecutionEngine(registry)

    plan = await engine.create_plan([
        {"tool": "FileCreator.createMarkdown", "args": {"filename": "README", "contents": "# Demo"}},
        {"tool": "GitHub.addFile", "args": {"repo": "octo/demo", "path": "README.md", "contentRef": 0}},
    ])
    outcome = await engine.execute(plan.id)

    assert outcome.success, outcome.plan.error
    put = fake_github.requests[-1]
    assert base64.b64decode(json.loads(put.content)["content"]).decode() == "# Demo"

    plan = await engine.create_plan([
        {"tool": "Gmail.sendEmail", "args": {"to": "nobody", "subject": "Hi", "bodyRef": 0}},
    ])
    outcome = await engine.execute(plan.id)
    assert outcome.plan.status == PlanStatus.FAILED
    assert outcome.plan.error == "unresolved reference: step 0"

    plan = await engine.create_plan([
        {"tool": "FileCreator.createMarkdown", "args": {"filename": "mail", "contents": "Hello"}},
        {"tool": "Gmail.sendEmail", "args": {"to": "nobody", "subject": "Hi", "bodyRef": 0}},
    ])
    outcome = await engine.execute(plan.id)
    assert outcome.plan.status == PlanStatus.FAILED
    assert outcome.plan.current_step == 1
    assert outcome.plan.error == "invalid recipient"

    print("✓ Test 8 passed: Plan runs across the built-in tools")
