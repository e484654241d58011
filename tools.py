"""
Built-in tool providers: GitHub, Gmail and FileCreator.

WHAT THIS FILE DOES:
-------------------
Each provider is a small class whose async methods are the tools a plan can
call. create_default_tools() registers all of them, with their typed
definitions, in a ToolRegistry:

    GitHub.createRepo(name, description)
    GitHub.addFile(repo, path, content, message)
    Gmail.sendEmail(to, subject, body)
    FileCreator.createMarkdown(filename, contents)

FAILURES ARE VALUES:
-------------------
Anything a user can fix (missing token, bad recipient, API said no) comes
back as ToolResult.failure("<what to do about it>"). Only genuine bugs
raise, and the engine turns those into a failed step as well.

CREDENTIALS:
-----------
Read from the environment at call time, using the variable names in the
config (GITHUB_TOKEN, GMAIL_EMAIL, GMAIL_APP_PASSWORD by default).
"""

import asyncio
import base64
import logging
import re
import smtplib
from datetime import datetime
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Callable, Optional
from urllib.parse import quote

import httpx

from config import Config, GitHubConfig, GmailConfig, get_default_config
from execution import ToolRegistry
from schemas import ToolDefinition, ToolParameter, ToolResult
from workspace import WorkspaceManager

logger = logging.getLogger(__name__)

_EMAIL_ADDRESS = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


# =============================================================================
# GITHUB
# =============================================================================

class GitHubTools:
    """
    Repository operations through the GitHub REST API.

    Uses one short-lived httpx.AsyncClient per call. Pass a transport
    (e.g. httpx.MockTransport) to talk to something other than the network.
    """

    def __init__(
        self,
        config: Optional[GitHubConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or GitHubConfig()
        self._transport = transport
        self._login: Optional[str] = None

    def _client(self, token: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )

    def _token_missing(self) -> ToolResult:
        return ToolResult.failure(
            f"GitHub token not configured. Set {self.config.token_env}."
        )

    @staticmethod
    def _api_error(response: httpx.Response, action: str) -> ToolResult:
        try:
            message = response.json().get("message", "")
        except ValueError:
            message = response.text[:200]
        return ToolResult.failure(
            f"Failed to {action}: GitHub API returned {response.status_code}"
            + (f" ({message})" if message else "")
        )

    async def _owner(self, client: httpx.AsyncClient) -> Optional[str]:
        """Login of the token's user, looked up once."""
        if self._login is None:
            response = await client.get("/user")
            if response.is_success:
                self._login = response.json().get("login")
        return self._login

    async def create_repo(self, name: str, description: Optional[str] = None) -> ToolResult:
        """Create a repository for the authenticated user."""
        token = self.config.get_token()
        if not token:
            return self._token_missing()

        payload = {"name": name}
        if description:
            payload["description"] = description

        try:
            async with self._client(token) as client:
                response = await client.post("/user/repos", json=payload)
        except httpx.HTTPError as e:
            return ToolResult.failure(f"Failed to create repository: {e}")

        if not response.is_success:
            return self._api_error(response, "create repository")

        data = response.json()
        logger.info(f"Created GitHub repository {data.get('full_name', name)}")
        return ToolResult.ok({
            "id": data.get("id"),
            "name": data.get("name", name),
            "full_name": data.get("full_name"),
            "description": data.get("description"),
            "html_url": data.get("html_url"),
            "clone_url": data.get("clone_url"),
            "created_at": data.get("created_at"),
        })

    async def add_file(
        self,
        repo: str,
        path: str,
        content: str,
        message: Optional[str] = None
    ) -> ToolResult:
        """
        Create a file in a repository with a single commit.

        ``repo`` is either "owner/name" or just "name" for the token's user.
        """
        token = self.config.get_token()
        if not token:
            return self._token_missing()

        path = path.strip().lstrip("/")
        if not path:
            return ToolResult.failure("File path must not be empty")

        try:
            async with self._client(token) as client:
                if "/" in repo:
                    owner, name = repo.split("/", 1)
                else:
                    owner, name = await self._owner(client), repo
                    if not owner:
                        return ToolResult.failure(
                            "Could not determine the GitHub user; pass repo as 'owner/name'"
                        )

                response = await client.put(
                    f"/repos/{owner}/{name}/contents/{quote(path)}",
                    json={
                        "message": message or f"Add {path}",
                        "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                    },
                )
        except httpx.HTTPError as e:
            return ToolResult.failure(f"Failed to add file to repository: {e}")

        if not response.is_success:
            return self._api_error(response, f"add {path} to {repo}")

        data = response.json()
        file_info = data.get("content") or {}
        commit = data.get("commit") or {}
        logger.info(f"Added {path} to {owner}/{name}")
        return ToolResult.ok({
            "content": {
                "name": file_info.get("name", path.rsplit("/", 1)[-1]),
                "path": file_info.get("path", path),
                "sha": file_info.get("sha"),
                "size": file_info.get("size", len(content.encode("utf-8"))),
                "html_url": file_info.get("html_url"),
            },
            "commit": {
                "sha": commit.get("sha"),
                "message": commit.get("message", message or f"Add {path}"),
            },
        })


# =============================================================================
# GMAIL
# =============================================================================

class GmailTools:
    """
    Sends mail through Gmail's SMTP server with an app password.

    smtplib blocks, so the conversation runs in a worker thread.
    """

    def __init__(
        self,
        config: Optional[GmailConfig] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP
    ):
        self.config = config or GmailConfig()
        self._smtp_factory = smtp_factory

    def _send(self, sender: str, password: str, message: MIMEText) -> None:
        with self._smtp_factory(self.config.smtp_host, self.config.smtp_port) as server:
            server.starttls()
            server.login(sender, password)
            server.send_message(message)

    async def send_email(self, to: str, subject: str, body: str) -> ToolResult:
        """Send a plain-text email."""
        to = to.strip()
        if not _EMAIL_ADDRESS.match(to):
            return ToolResult.failure("invalid recipient")

        sender, password = self.config.get_credentials()
        if not sender or not password:
            return ToolResult.failure(
                f"Gmail credentials not configured. Set {self.config.email_env} "
                f"and {self.config.app_password_env}."
            )

        message = MIMEText(body, "plain", "utf-8")
        message["From"] = sender
        message["To"] = to
        message["Subject"] = subject
        message_id = make_msgid()
        message["Message-ID"] = message_id

        try:
            await asyncio.to_thread(self._send, sender, password, message)
        except smtplib.SMTPAuthenticationError:
            return ToolResult.failure(
                f"Gmail rejected the login for {sender}. Check {self.config.app_password_env}."
            )
        except smtplib.SMTPRecipientsRefused:
            return ToolResult.failure("invalid recipient")
        except (smtplib.SMTPException, OSError) as e:
            return ToolResult.failure(f"Failed to send email: {e}")

        logger.info(f"Sent email to {to}")
        return ToolResult.ok({
            "id": message_id,
            "to": to,
            "subject": subject,
            "snippet": body[:100],
            "labelIds": ["SENT"],
            "sentAt": datetime.now().isoformat(),
        })


# =============================================================================
# FILE CREATOR
# =============================================================================

class FileCreatorTools:
    """Writes documents into the workspace folder."""

    def __init__(self, workspace: WorkspaceManager):
        self.workspace = workspace

    async def create_markdown(self, filename: str, contents: str) -> ToolResult:
        """Write a markdown file; ``.md`` is appended when missing."""
        filename = filename.strip()
        if not filename.lower().endswith(".md"):
            filename = f"{filename}.md"

        try:
            record = await asyncio.to_thread(self.workspace.write_document, filename, contents)
        except ValueError as e:
            return ToolResult.failure(str(e))
        except OSError as e:
            return ToolResult.failure(f"Failed to create markdown file: {e}")

        logger.info(f"Created {record['localPath']}")
        return ToolResult.ok(record)


# =============================================================================
# DEFAULT REGISTRY
# =============================================================================

def create_default_tools(
    config: Optional[Config] = None,
    github: Optional[GitHubTools] = None,
    gmail: Optional[GmailTools] = None,
    files: Optional[FileCreatorTools] = None
) -> ToolRegistry:
    """
    Create a registry with the built-in tools.

    Args:
        config: Settings for the providers (defaults if None)
        github, gmail, files: Ready-made providers to use instead of building
            them from the config
    """
    config = config or get_default_config()
    github = github or GitHubTools(config.tools.github)
    gmail = gmail or GmailTools(config.tools.gmail)
    files = files or FileCreatorTools(WorkspaceManager(config.tools.files.base_path))

    registry = ToolRegistry()

    # Register GitHub.createRepo
    registry.register(
        ToolDefinition(
            name="GitHub.createRepo",
            description="Create a new GitHub repository",
            parameters=[
                ToolParameter(name="name", type="string", description="Repository name", required=True),
                ToolParameter(name="description", type="string", description="Short description", required=False),
            ],
            returns="Repository details (name, full_name, html_url, clone_url)",
            output_field="html_url",
        ),
        github.create_repo
    )

    # Register GitHub.addFile
    registry.register(
        ToolDefinition(
            name="GitHub.addFile",
            description="Add a file to a repository",
            parameters=[
                ToolParameter(name="repo", type="string", description="'owner/name' or a repository of the token's user", required=True),
                ToolParameter(name="path", type="string", description="Path of the file in the repository", required=True),
                ToolParameter(name="content", type="string", description="File contents", required=True),
                ToolParameter(name="message", type="string", description="Commit message", required=False),
            ],
            returns="File and commit details",
        ),
        github.add_file
    )

    # Register Gmail.sendEmail
    registry.register(
        ToolDefinition(
            name="Gmail.sendEmail",
            description="Send an email via Gmail",
            parameters=[
                ToolParameter(name="to", type="string", description="Recipient address", required=True),
                ToolParameter(name="subject", type="string", description="Subject line", required=True),
                ToolParameter(name="body", type="string", description="Plain-text body", required=True),
            ],
            returns="Sent message id, recipient and snippet",
        ),
        gmail.send_email
    )

    # Register FileCreator.createMarkdown
    registry.register(
        ToolDefinition(
            name="FileCreator.createMarkdown",
            description="Create a markdown file with the specified filename and contents",
            parameters=[
                ToolParameter(name="filename", type="string", description="File name, '.md' added if missing", required=True),
                ToolParameter(name="contents", type="string", description="Markdown text", required=True),
            ],
            returns="Document record (id, fileName, localPath, content, size, createdAt)",
            output_field="content",
        ),
        files.create_markdown
    )

    return registry
