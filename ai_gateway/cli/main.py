"""
CLI interface for the AI Interaction Gateway.

Provides command-line access to the proxy server, spend stats, the
verification pipeline and project setup.
"""

import asyncio
import dataclasses
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import uvicorn
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_gateway.config.loader import (
    DEFAULT_POLICY_PATH,
    DEFAULT_PROVIDERS_PATH,
    GatewaySettings,
    load_budget_policy,
    load_gateway_settings,
    load_provider_config,
)
from ai_gateway.core.code_quality import analyze_code_quality, quality_score
from ai_gateway.core.policy import month_key
from ai_gateway.core.verification import HallucinationVerifier
from ai_gateway.proxy.app import build_gateway, create_app
from ai_gateway.storage.models import CodeQualityMetrics, VerificationResult
from ai_gateway.storage.repository import InteractionRepository

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_CONFIG_ERRORS = (FileNotFoundError, ValueError, yaml.YAMLError)

_SUFFIX_LANGUAGES = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
}

_SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "dim",
}

PROVIDER_TEMPLATE: Dict[str, Any] = {
    "providers": [
        {
            "name": "gemini",
            "routePrefix": "/gemini",
            "targetUrl": "https://generativelanguage.googleapis.com",
            "apiKeyEnvVar": "GEMINI_API_KEY",
            "authHeader": "x-goog-api-key",
            "tokenMapping": {
                "prompt": "usageMetadata.promptTokenCount",
                "completion": "usageMetadata.candidatesTokenCount",
                "total": "usageMetadata.totalTokenCount",
            },
        },
        {
            "name": "openai",
            "routePrefix": "/openai",
            "targetUrl": "https://api.openai.com/v1",
            "apiKeyEnvVar": "OPENAI_API_KEY",
            "authHeader": "Authorization",
            "authScheme": "Bearer",
            "tokenMapping": {
                "prompt": "usage.prompt_tokens",
                "completion": "usage.completion_tokens",
                "total": "usage.total_tokens",
            },
        },
        {
            "name": "anthropic",
            "routePrefix": "/anthropic",
            "targetUrl": "https://api.anthropic.com",
            "apiKeyEnvVar": "ANTHROPIC_API_KEY",
            "authHeader": "x-api-key",
            "tokenMapping": {
                "prompt": "usage.input_tokens",
                "completion": "usage.output_tokens",
            },
        },
        {
            "name": "ollama",
            "routePrefix": "/ollama",
            "targetUrl": "http://localhost:11434",
            "defaultModel": "llama3",
            "tokenMapping": {
                "prompt": "prompt_eval_count",
                "completion": "eval_count",
            },
        },
    ]
}

POLICY_TEMPLATE: Dict[str, Any] = {
    "version": "1",
    "monthlyUSD": 50,
    "perProviderMonthlyUSD": {"gemini": 20, "openai": 20},
    "webhookUrl": None,
}


def _load_settings(settings_path: Optional[str]) -> GatewaySettings:
    try:
        return load_gateway_settings(settings_path)
    except _CONFIG_ERRORS as e:
        console.print(f"[red]Error loading settings:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.4f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Interaction Gateway CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Interaction Gateway - Use --help to see available commands")


@app.command()
def serve(
    settings_path: Optional[str] = typer.Option(
        None, "--settings", "-s", help="Gateway settings file (defaults to gateway.yaml if present)"
    ),
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    """Run the proxy server."""
    settings = _load_settings(settings_path)
    level = (log_level or settings.logging.level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )

    try:
        routes = load_provider_config(settings.paths.providers)
    except _CONFIG_ERRORS as e:
        console.print(f"[red]Error loading provider config:[/] {str(e)}")
        console.print("Run `ai-gateway init` to create a template configuration.")
        sys.exit(EXIT_CODE_FAIL)

    bind_host = host or settings.server.host
    bind_port = port or settings.server.port
    for route in routes:
        console.print(
            f"[green]✓[/] {route.name}: http://{bind_host}:{bind_port}{route.route_prefix} -> {route.target_url}"
        )

    application = create_app(build_gateway(settings, routes))
    uvicorn.run(application, host=bind_host, port=bind_port, log_level=level.lower(), log_config=None)


@app.command()
def stats(
    settings_path: Optional[str] = typer.Option(
        None, "--settings", "-s", help="Gateway settings file (defaults to gateway.yaml if present)"
    ),
):
    """Show month-to-date spend per provider."""
    settings = _load_settings(settings_path)
    repository = InteractionRepository(settings.paths.interaction_log, settings.logging.rotate_bytes)
    key = month_key(datetime.now(timezone.utc))
    summary = repository.month_summary(key)

    if summary.interaction_count == 0:
        console.print(f"\n[bold yellow]No interactions recorded for {key}[/]")
        console.print("\nTo get started:")
        console.print("1. Run `ai-gateway serve`")
        console.print("2. Point your AI client at the gateway routes")
        console.print("3. Run this command again\n")
        sys.exit(EXIT_CODE_PASS)

    policy = load_budget_policy(settings.paths.policy)
    caps = policy.per_provider_monthly_usd if policy else {}

    table = Table(title=f"Month-to-date spend ({key})")
    table.add_column("Provider")
    table.add_column("Cost", justify="right")
    table.add_column("Cap", justify="right")
    for provider, cost in sorted(summary.totals.by_provider.items()):
        cap = caps.get(provider)
        table.add_row(provider, _format_currency(cost), _format_currency(cap) if cap is not None else "-")
    monthly_cap = policy.monthly_usd if policy else None
    table.add_row(
        "[bold]Total[/]",
        f"[bold]{_format_currency(summary.totals.total)}[/]",
        _format_currency(monthly_cap) if monthly_cap is not None else "-",
    )
    console.print(table)
    console.print(f"Interactions: {summary.interaction_count} ({summary.coding_interactions} coding)")
    if summary.average_quality_score is not None:
        console.print(f"Average code quality: {summary.average_quality_score:.0f}/100")
    if summary.average_effectiveness_score is not None:
        console.print(f"Average effectiveness: {summary.average_effectiveness_score:.0f}/100")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def verify(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Source file to verify"),
    language: Optional[str] = typer.Option(
        None, "--language", "-l", help="Language of the file (inferred when omitted)"
    ),
    no_execute: bool = typer.Option(False, "--no-execute", help="Skip the execution sandbox"),
    threshold: Optional[float] = typer.Option(
        None, "--threshold", "-t", min=0.0, max=1.0, help="Minimum finding confidence"
    ),
    settings_path: Optional[str] = typer.Option(
        None, "--settings", "-s", help="Gateway settings file (defaults to gateway.yaml if present)"
    ),
):
    """
    Run the hallucination verification pipeline on a source file.

    Exits with code 1 when a critical issue is found or verification
    could not run.
    """
    settings = _load_settings(settings_path)
    overrides: Dict[str, Any] = {}
    if no_execute:
        overrides["execute"] = False
    if threshold is not None:
        overrides["confidence_threshold"] = threshold
    verification_settings = dataclasses.replace(settings.verification, **overrides)

    code = file.read_text(encoding="utf-8")
    declared = language or _SUFFIX_LANGUAGES.get(file.suffix.lower())
    result = asyncio.run(HallucinationVerifier(settings=verification_settings).verify(code, declared))
    metrics = analyze_code_quality(code, result.language or declared)

    _display_verification_result(file, result, metrics)

    if result.error or result.has_critical_issue:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def init(
    directory: Path = typer.Option(Path("."), "--directory", "-d", help="Where to write the templates"),
):
    """Write template provider and policy files. Existing files are left alone."""
    try:
        directory.mkdir(parents=True, exist_ok=True)
        for name, template in ((DEFAULT_PROVIDERS_PATH, PROVIDER_TEMPLATE), (DEFAULT_POLICY_PATH, POLICY_TEMPLATE)):
            target = directory / name
            if target.exists():
                console.print(f"[yellow]![/] {target} already exists, skipping")
                continue
            target.write_text(json.dumps(template, indent=2) + "\n", encoding="utf-8")
            console.print(f"[green]✓[/] Created {target}")
        sys.exit(EXIT_CODE_PASS)
    except OSError as e:
        console.print(f"[red]Error writing templates:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _display_verification_result(file: Path, result: VerificationResult, metrics: CodeQualityMetrics):
    """Display code quality, findings and recommendations."""
    console.print(f"\n[bold]Hallucination Verification: {file.name}[/bold]")
    console.print("-" * 40)

    if result.error:
        console.print(f"[red]Verification failed:[/] {result.error}")
        return

    console.print(f"Language: {result.language}")
    console.print(f"Hallucination rate: {result.overall_rate:.1%}")
    console.print(
        f"Code quality: {quality_score(metrics)}/100 "
        f"(readability {metrics.readability:.1f}/10, complexity {metrics.complexity:.1f}/10)"
    )
    for issue in metrics.potential_issues:
        console.print(f"[yellow]![/] {issue}")
    if result.execution_result is not None:
        outcome = result.execution_result
        status = "[green]succeeded[/]" if outcome.success else "[red]failed[/]"
        console.print(f"Execution: {status} in {outcome.resource_usage.wall_time_ms}ms")

    if not result.findings:
        console.print("\n[green]✓[/] No likely hallucinations found")
        return

    table = Table(title="Findings")
    table.add_column("Severity")
    table.add_column("Category")
    table.add_column("Rule")
    table.add_column("Confidence", justify="right")
    table.add_column("Lines")
    table.add_column("Description")
    for finding in result.findings:
        style = _SEVERITY_STYLES.get(finding.severity.value, "")
        table.add_row(
            f"[{style}]{finding.severity.value}[/]" if style else finding.severity.value,
            f"{finding.category.value}/{finding.subtype}",
            finding.rule,
            f"{finding.confidence:.0%}",
            ", ".join(str(line) for line in finding.line_numbers) or "-",
            finding.description,
        )
    console.print(table)

    for recommendation in result.recommendations:
        console.print(f"\n[bold]{recommendation.title}[/bold] ({recommendation.priority} priority)")
        console.print(recommendation.description)
        for item in recommendation.action_items:
            console.print(f"  - {item}")
        console.print(
            f"Estimated fix: {recommendation.estimated_time_to_fix}, "
            f"cost {_format_currency(recommendation.estimated_cost_usd)}"
        )

    if result.has_critical_issue:
        console.print("\n[bold red]Critical issue found[/]")


if __name__ == "__main__":
    app()
