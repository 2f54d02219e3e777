import json
import logging
import os
from typing import Any, Dict, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from urloracle import __version__
from urloracle.builder import AttestationBuilder
from urloracle.chain import (
    ArtifactStore,
    ChainLinker,
    DirectoryArtifactStore,
    ScriptArtifactStore,
    verify_chain,
)
from urloracle.config import Settings, load_settings
from urloracle.errors import AttestationFormatError, BuildError, ConfigError, FetchError
from urloracle.fetch import ContentFetcher
from urloracle.identity import EphemeralIdentitySigner, GitHubActionsTokenProvider, IdentityVerifier
from urloracle.logging import configure_json_logging
from urloracle.metrics import write_textfile
from urloracle.payload import check_for_change, load_attestation
from urloracle.verifier import CheckStatus, VerificationContext, VerificationResult, Verifier

app = typer.Typer(name="url-oracle", help="Signed, chained attestations of URL content", no_args_is_help=True)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

BUNDLED_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "scripts", "download_attestation.sh")

_STATUS_STYLE = {
    CheckStatus.PASSED: "[green]passed[/green]",
    CheckStatus.FAILED: "[red]failed[/red]",
    CheckStatus.SKIPPED: "[yellow]skipped[/yellow]",
}


def _emit(payload: Dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, sort_keys=True))


def _fail(message: str) -> NoReturn:
    err_console.print(f"[red]error:[/red] {escape(message)}")
    raise typer.Exit(code=1)


def _settings(ctx: typer.Context) -> Settings:
    settings = ctx.obj
    if not isinstance(settings, Settings):
        settings = load_settings()
        ctx.obj = settings
    return settings


def _artifact_store(settings: Settings) -> ArtifactStore:
    if settings.artifact_dir:
        return DirectoryArtifactStore(settings.artifact_dir)
    if settings.artifact_script:
        return ScriptArtifactStore(settings.artifact_script, caller_token=settings.caller_token)
    return ScriptArtifactStore(BUNDLED_SCRIPT, caller_token=settings.caller_token, interpreter="bash")


def _identity_verifier(settings: Settings) -> IdentityVerifier:
    return IdentityVerifier(
        issuer=settings.oidc_issuer,
        jwks_url=settings.jwks_url,
        jwks_json=settings.jwks_json,
        timeout_s=settings.http_timeout_s,
    )


def _render_result(result: VerificationResult) -> None:
    table = Table(title="Attestation verification")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")
    for c in result.checks:
        table.add_row(c.label, _STATUS_STYLE[c.status], escape(c.error or ""))
    console.print(table)
    if result.ok:
        console.print(f"[green]{escape(result.summary())}[/green]")
    else:
        console.print(f"[red]{escape(result.summary())}[/red]")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", help="YAML settings file (overrides URL_ORACLE_CONFIG)"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level for the JSON logs on stderr"),
) -> None:
    try:
        settings = load_settings(config)
    except ConfigError as e:
        _fail(str(e))
    configure_json_logging(log_level or settings.log_level)
    logger.debug("url-oracle %s", __version__, extra={"config_hash": settings.config_hash()})
    ctx.obj = settings


@app.command()
def generate(
    ctx: typer.Context,
    url: str = typer.Option(..., "--url", help="URL whose content is attested"),
    attestation_file: str = typer.Option(..., "--attestation-file", help="Output attestation path"),
    skip_chain_link: bool = typer.Option(False, "--skip-chain-link", help="Do not link to a previous attestation"),
    chain_pointer: Optional[str] = typer.Option(
        None, "--chain-pointer", help="Chain pointer file: read as the previous link, then rewritten for this attestation"
    ),
    previous_attestation: Optional[str] = typer.Option(
        None, "--previous-attestation", help="Keep the downloaded previous attestation at this path"
    ),
) -> None:
    """Fetch URL content, sign it under the workflow identity and write an attestation."""
    settings = _settings(ctx)
    try:
        if not settings.id_token_request_url or not settings.id_token_request_token:
            _fail("missing ACTIONS_ID_TOKEN_REQUEST_URL or ACTIONS_ID_TOKEN_REQUEST_TOKEN")

        provider = GitHubActionsTokenProvider(
            settings.id_token_request_url,
            settings.id_token_request_token,
            timeout_s=settings.http_timeout_s,
        )
        linker = None
        if not skip_chain_link:
            linker = ChainLinker(
                _artifact_store(settings),
                pointer_file=chain_pointer,
                previous_file=previous_attestation,
            )
        builder = AttestationBuilder(
            ContentFetcher(timeout_s=settings.http_timeout_s, max_bytes=settings.max_content_bytes),
            EphemeralIdentitySigner(provider),
            linker,
        )
        try:
            attestation = builder.build_and_save(
                url,
                attestation_file,
                skip_chain_link=skip_chain_link,
                pointer_file=chain_pointer,
            )
        except BuildError as e:
            _fail(str(e))

        payload = attestation.payload
        console.print(f"[green]Attestation written to[/green] {escape(attestation_file)}")
        console.print(f"  Commit SHA:   {payload.commit_sha[:8]}...")
        console.print(f"  Content:      {payload.content_size} bytes, sha256 {payload.content_digest_hex}")
        if payload.previous_attestation_digest:
            console.print(f"  Links to:     {payload.previous_attestation_digest.hex()}")
        else:
            console.print("  Links to:     (first attestation in chain)")
    finally:
        write_textfile(settings.metrics_textfile)


@app.command()
def verify(
    ctx: typer.Context,
    attestation_file: str = typer.Option(..., "--attestation-file", help="Attestation to verify"),
    workflow_ref: Optional[str] = typer.Option(None, "--workflow-ref", help="Expected job_workflow_ref"),
    commit_sha: Optional[str] = typer.Option(None, "--commit-sha", help="Expected commit SHA"),
    repository: Optional[str] = typer.Option(None, "--repository", help="Expected oracle repository (owner/repo)"),
    json_output: bool = typer.Option(False, "--json", help="Emit the result as JSON"),
) -> None:
    """Run every verification check and report each result. Exit 0 only if all pass."""
    settings = _settings(ctx)
    try:
        try:
            identity = _identity_verifier(settings)
        except ValueError as e:
            _fail(str(e))
        context = VerificationContext(
            expected_workflow_ref=workflow_ref or settings.expected_workflow_ref,
            expected_commit_sha=commit_sha,
            expected_repository=repository or settings.expected_repository,
        )
        result = Verifier(identity, context).verify(attestation_file)
        if json_output:
            _emit(result.to_dict())
        else:
            _render_result(result)
        if not result.ok:
            raise typer.Exit(code=1)
    finally:
        write_textfile(settings.metrics_textfile)


@app.command("check-change")
def check_change(
    ctx: typer.Context,
    url: str = typer.Option(..., "--url", help="URL to fetch"),
    previous_attestation: Optional[str] = typer.Option(
        None, "--previous-attestation", help="Previous attestation to compare against"
    ),
) -> None:
    """Print changed=true|false for CI step outputs."""
    settings = _settings(ctx)
    try:
        fetcher = ContentFetcher(timeout_s=settings.http_timeout_s, max_bytes=settings.max_content_bytes)
        try:
            fetched = fetcher.fetch(url)
        except FetchError as e:
            _fail(str(e))
        changed = check_for_change(fetched.digest, previous_attestation)
        typer.echo(f"changed={'true' if changed else 'false'}")
    finally:
        write_textfile(settings.metrics_textfile)


@app.command("verify-chain")
def verify_chain_cmd(
    files: List[str] = typer.Argument(..., help="Attestation files, oldest first"),
    require_genesis: bool = typer.Option(False, "--require-genesis", help="First file must not link backwards"),
    json_output: bool = typer.Option(False, "--json", help="Emit the report as JSON"),
) -> None:
    """Check that each attestation links to the payload digest of the one before it."""
    attestations = []
    for path in files:
        try:
            attestations.append(load_attestation(path))
        except AttestationFormatError as e:
            _fail(str(e))

    report = verify_chain(attestations, require_genesis=require_genesis)
    if json_output:
        _emit({"ok": report.ok, "checked": report.checked, "errors": report.errors})
    elif report.ok:
        console.print(f"[green]Chain of {report.checked} attestations is intact[/green]")
    else:
        console.print(f"[red]Chain broken ({len(report.errors)} problems):[/red]")
        for err in report.errors:
            console.print(f"  - {escape(err)}")
    if not report.ok:
        raise typer.Exit(code=1)
