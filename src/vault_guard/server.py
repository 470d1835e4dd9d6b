"""Vault Guard MCP Server - Main server implementation.

This module exposes guarded Obsidian vault operations as MCP tools. Every
mutating tool runs through the guardrail pipeline: classification, a
confirmation token proportional to risk, a backup of destroyed content,
then execution.

Confirmation over MCP is two-step. A gated tool call without
``confirmation`` returns ``confirmation_required`` with the prompt payload;
the agent shows it to the user and calls the tool again with the user's
answer.
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import typer
from fastmcp import FastMCP
from pydantic import BaseModel, Field

from .config import ConfigResolver, ResolvedConfig
from .executor.pipeline import GuardrailPipeline
from .safety.models import (
    HttpMethod,
    OperationRequest,
    PatchMode,
    PatchTargetType,
    Period,
    TargetKind,
    VaultGuardError,
)
from .vault.client import VaultBackend, VaultClient

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


class ServerConfig(BaseModel):
    """Configuration for the Vault Guard MCP server.

    Vault settings (API key, host, delete permission, backups) are resolved
    per operation by ``ConfigResolver``; this model only locates the files
    it reads.
    """

    project_file: Optional[str] = Field(
        default_factory=lambda: os.getenv("VAULT_GUARD_PROJECT_FILE"),
        description="Project KEY=value settings file (default ./.obsidian-vault.env)",
    )
    user_file: Optional[str] = Field(
        default_factory=lambda: os.getenv("VAULT_GUARD_USER_FILE"),
        description="User JSON settings file (default ~/.config/obsidian-vault/config.json)",
    )
    development_mode: bool = Field(
        default_factory=lambda: os.getenv("DEVELOPMENT_MODE", "false").lower()
        == "true",
        description="Enable development mode with additional logging",
    )


class VaultGuardServer:
    """Main Vault Guard MCP Server implementation.

    The tool methods (``vault_read``, ``vault_delete`` ...) hold the logic;
    the functions registered with FastMCP only forward to them.
    """

    def __init__(self, config: ServerConfig, vault: Optional[VaultBackend] = None):
        """Initialize the server.

        Args:
            config: Server configuration settings
            vault: Vault backend; a ``VaultClient`` is built from settings when omitted
        """
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self.resolver = ConfigResolver(
            project_file=config.project_file, user_file=config.user_file
        )
        self._vault = vault
        self.pipeline: Optional[GuardrailPipeline] = None

        self.mcp: FastMCP = FastMCP("vault-guard")
        self._running = False

        self._register_tools()

        self.logger.info(
            "Vault Guard server initialized",
            project_file=str(self.resolver.project_file),
            user_file=str(self.resolver.user_file),
            development_mode=config.development_mode,
        )

    def _get_pipeline(self, config: ResolvedConfig) -> GuardrailPipeline:
        """Get or create the pipeline; the audit trail lives as long as it does."""
        if self.pipeline is None:
            if self._vault is None:
                self._vault = VaultClient.from_config(config)
            self.pipeline = GuardrailPipeline(self._vault, resolver=self.resolver)
        return self.pipeline

    def _build_request(
        self,
        method: HttpMethod,
        path: Optional[str],
        target: str,
        period: Optional[str],
        **fields: Any,
    ) -> OperationRequest:
        target_kind = TargetKind(target)
        if target_kind == TargetKind.FILE and not path:
            raise VaultGuardError("A vault path is required for file targets", "INVALID_REQUEST")

        if period:
            fields["period"] = Period(period)
        elif target_kind == TargetKind.PERIODIC:
            fields["period"] = Period.DAILY

        return OperationRequest(
            method=method,
            target_kind=target_kind,
            path=path or "",
            **fields,
        )

    async def _run(
        self, request: OperationRequest, confirmation: Optional[str] = None
    ) -> Dict[str, Any]:
        config = self.resolver.snapshot()
        pipeline = self._get_pipeline(config)
        result = await pipeline.run(request, response=confirmation, config=config)
        return result.to_dict()

    def _error(self, error: Exception, tool: str) -> Dict[str, Any]:
        if isinstance(error, VaultGuardError):
            self.logger.warning(f"{tool} failed", error=error.message, error_code=error.error_code)
            return {"status": "error", **error.to_dict()}

        self.logger.error(f"{tool} failed", error=str(error))
        return {
            "status": "error",
            "error": str(error),
            "error_code": "INVALID_REQUEST",
        }

    async def vault_read(
        self, path: Optional[str] = None, target: str = "file", period: Optional[str] = None
    ) -> Dict[str, Any]:
        """Read a note. Reads are never gated."""
        try:
            request = self._build_request(HttpMethod.GET, path, target, period)
            return await self._run(request)
        except (VaultGuardError, ValueError) as e:
            return self._error(e, "vault_read")

    async def vault_write(
        self,
        content: str,
        path: Optional[str] = None,
        target: str = "file",
        period: Optional[str] = None,
        confirmation: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create or overwrite a note."""
        try:
            request = self._build_request(HttpMethod.PUT, path, target, period, content=content)
            return await self._run(request, confirmation)
        except (VaultGuardError, ValueError) as e:
            return self._error(e, "vault_write")

    async def vault_append(
        self,
        content: str,
        path: Optional[str] = None,
        target: str = "file",
        period: Optional[str] = None,
        confirmation: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append content to the end of a note."""
        try:
            request = self._build_request(HttpMethod.POST, path, target, period, content=content)
            return await self._run(request, confirmation)
        except (VaultGuardError, ValueError) as e:
            return self._error(e, "vault_append")

    async def vault_patch(
        self,
        content: str,
        mode: str,
        target_type: str,
        patch_target: str,
        path: Optional[str] = None,
        target: str = "file",
        period: Optional[str] = None,
        confirmation: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert or replace content relative to a heading, block or frontmatter key."""
        try:
            request = self._build_request(
                HttpMethod.PATCH,
                path,
                target,
                period,
                content=content,
                patch_mode=PatchMode(mode),
                patch_target_type=PatchTargetType(target_type),
                patch_target=patch_target,
            )
            return await self._run(request, confirmation)
        except (VaultGuardError, ValueError) as e:
            return self._error(e, "vault_patch")

    async def vault_delete(
        self,
        path: Optional[str] = None,
        target: str = "file",
        period: Optional[str] = None,
        confirmation: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Delete a note."""
        try:
            request = self._build_request(HttpMethod.DELETE, path, target, period)
            return await self._run(request, confirmation)
        except (VaultGuardError, ValueError) as e:
            return self._error(e, "vault_delete")

    async def vault_run_command(
        self, command_id: str, confirmation: Optional[str] = None
    ) -> Dict[str, Any]:
        """Execute a registered vault application command."""
        try:
            request = OperationRequest(
                method=HttpMethod.POST,
                target_kind=TargetKind.COMMAND,
                command_id=command_id,
            )
            return await self._run(request, confirmation)
        except (VaultGuardError, ValueError) as e:
            return self._error(e, "vault_run_command")

    async def list_backups(self, path: str) -> Dict[str, Any]:
        """List safety copies of a resource, newest first."""
        try:
            config = self.resolver.snapshot()
            manager = self._get_pipeline(config).backup_manager_for(config)
            records = manager.list_backups(path)
        except VaultGuardError as e:
            return self._error(e, "list_backups")

        return {
            "status": "success",
            "resource_key": manager.normalize_key(path),
            "backup_dir": str(manager.backup_dir),
            "backups": [
                {"file": record.filename, "timestamp": record.timestamp.isoformat()}
                for record in reversed(records)
            ],
            "total_count": len(records),
        }

    def get_audit_history(
        self,
        limit: int = 50,
        operation_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return the audit trail of guarded operations."""
        entries: List[Dict[str, Any]] = []
        if self.pipeline is not None:
            entries = self.pipeline.get_audit_history(
                limit=limit,
                operation_filter=operation_filter,
                status_filter=status_filter,
            )

        return {
            "status": "success",
            "history": entries,
            "total_count": len(entries),
            "filters_applied": {
                "limit": limit,
                "operation_filter": operation_filter,
                "status_filter": status_filter,
            },
        }

    def _register_tools(self) -> None:
        """Register MCP tools for AI assistant interaction."""

        @self.mcp.tool()
        async def vault_read(
            path: Optional[str] = None,
            target: str = "file",
            period: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Read a note from the vault.

            Args:
                path: Vault path, for file targets
                target: file, active or periodic
                period: daily, weekly, monthly, quarterly or yearly (periodic targets)
            """
            return await self.vault_read(path, target, period)

        @self.mcp.tool()
        async def vault_write(
            content: str,
            path: Optional[str] = None,
            target: str = "file",
            period: Optional[str] = None,
            confirmation: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Create a note or overwrite an existing one.

            Overwrites require the user to type REPLACE. Call without
            ``confirmation`` first, show the returned prompt to the user,
            then call again with their exact answer.
            """
            return await self.vault_write(content, path, target, period, confirmation)

        @self.mcp.tool()
        async def vault_append(
            content: str,
            path: Optional[str] = None,
            target: str = "file",
            period: Optional[str] = None,
            confirmation: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Append content to a note."""
            return await self.vault_append(content, path, target, period, confirmation)

        @self.mcp.tool()
        async def vault_patch(
            content: str,
            mode: str,
            target_type: str,
            patch_target: str,
            path: Optional[str] = None,
            target: str = "file",
            period: Optional[str] = None,
            confirmation: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Insert content relative to a heading, block reference or frontmatter key.

            Args:
                content: Content to insert
                mode: append, prepend or replace
                target_type: heading, block or frontmatter
                patch_target: Anchor; nested headings use ``Parent::Child``
                path: Vault path, for file targets
                target: file, active or periodic
                period: Period for periodic targets
                confirmation: The user's answer to a pending prompt
            """
            return await self.vault_patch(
                content, mode, target_type, patch_target, path, target, period, confirmation
            )

        @self.mcp.tool()
        async def vault_delete(
            path: Optional[str] = None,
            target: str = "file",
            period: Optional[str] = None,
            confirmation: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Delete a note.

            Deletes are always confirmed by the user, whatever the settings
            say. The prior content is backed up first.
            """
            return await self.vault_delete(path, target, period, confirmation)

        @self.mcp.tool()
        async def vault_run_command(
            command_id: str, confirmation: Optional[str] = None
        ) -> Dict[str, Any]:
            """Run a vault application command by id."""
            return await self.vault_run_command(command_id, confirmation)

        @self.mcp.tool()
        async def list_backups(path: str) -> Dict[str, Any]:
            """List backups of a note, newest first."""
            return await self.list_backups(path)

        @self.mcp.tool()
        async def get_audit_history(
            limit: int = 50,
            operation_filter: Optional[str] = None,
            status_filter: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Get the audit trail of guarded vault operations.

            Args:
                limit: Maximum number of history entries to return
                operation_filter: Filter by operation, e.g. ``DELETE Inbox/a.md``
                status_filter: Filter by status (requested, approved, executed ...)
            """
            return self.get_audit_history(limit, operation_filter, status_filter)

    async def start(self) -> None:
        """Start the MCP server."""
        if self._running:
            self.logger.warning("Server is already running")
            return

        self._running = True
        self.logger.info("Starting Vault Guard server")

        try:
            await self._validate_configuration()
            await self.mcp.run_async()

        except Exception as e:
            self.logger.error("Failed to start server", error=str(e), exc_info=True)
            self._running = False
            raise

    async def stop(self) -> None:
        """Stop the MCP server and close the vault client."""
        if not self._running:
            return

        self.logger.info("Stopping Vault Guard server")
        self._running = False

        if isinstance(self._vault, VaultClient):
            await self._vault.aclose()

    async def _validate_configuration(self) -> ResolvedConfig:
        """Validate settings and report where each one came from.

        Raises:
            ConfigMissing: If a required setting is absent
        """
        self.logger.info("Validating configuration")

        config = self.resolver.snapshot()
        for key, value in config.sources.items():
            self.logger.debug("Setting resolved", key=key, source=value.source.value)

        self.logger.info(
            "Configuration validation completed",
            base_url=config.base_url,
            allow_delete=config.allow_delete,
            backup_enabled=config.backup_enabled,
            backup_dir=str(config.backup_path),
        )
        return config


def create_app() -> typer.Typer:
    """Create the Typer CLI application."""
    app = typer.Typer(
        name="vault-guard",
        help="MCP server for guarded Obsidian vault operations",
        add_completion=False,
    )

    @app.command()
    def start(
        config_file: Optional[Path] = typer.Option(
            None,
            "--config",
            "-c",
            help="Path to project settings file",
        ),
        development: bool = typer.Option(
            False,
            "--dev",
            help="Enable development mode",
        ),
    ) -> None:
        """Start the Vault Guard MCP server."""

        config = ServerConfig()
        if config_file is not None:
            config.project_file = str(config_file)
        if development:
            config.development_mode = True

        server = VaultGuardServer(config)

        try:
            asyncio.run(server.start())
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")
        except Exception as e:
            logger.error("Server failed", error=str(e), exc_info=True)
            sys.exit(1)

    @app.command()
    def validate(
        config_file: Optional[Path] = typer.Option(
            None,
            "--config",
            "-c",
            help="Path to project settings file",
        ),
    ) -> None:
        """Validate configuration and show where each setting comes from."""

        config = ServerConfig()
        if config_file is not None:
            config.project_file = str(config_file)
        server = VaultGuardServer(config)

        async def run_validation() -> None:
            try:
                resolved = await server._validate_configuration()
            except VaultGuardError as e:
                typer.echo(f"❌ Configuration validation failed: {e.message}")
                sys.exit(1)

            for key, value in resolved.sources.items():
                shown = "***" if key == "API_KEY" else value.value
                typer.echo(f"  {key} = {shown} ({value.source.value})")
            typer.echo("✅ Configuration validation passed")

        asyncio.run(run_validation())

    return app


def main() -> None:
    """Main entry point for the Vault Guard server."""
    app = create_app()
    app()


if __name__ == "__main__":
    main()
