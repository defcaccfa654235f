import argparse
import asyncio
import json
import sys
from typing import List, Optional

from audit import recent_actions
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config.settings import get_settings
from .integrations.directory import get_directory_client
from .integrations.secret_store import get_credential_broker
from .models.provisioning import FailedResult, ProvisioningResult
from .services.provisioning import ProvisioningWorkflow
from .services.reporter import to_response
from .utils.telemetry import setup_logging, setup_telemetry


console = Console()

STATUS_STYLES = {
    "Success": "bold green",
    "AlreadyExists": "bold yellow",
    "Failed": "bold red",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gmsa-provision",
        description="Create a Group Managed Service Account if it does not already exist.",
    )
    parser.add_argument("--trace", action="store_true", help="Print OpenTelemetry spans to the console")
    subcommands = parser.add_subparsers(dest="command", required=True)

    provision = subcommands.add_parser("provision", help="Provision a single gMSA")
    provision.add_argument("--account-name", required=True)
    provision.add_argument("--dns-host-name", required=True)
    provision.add_argument("--principal", action="append", dest="principals", default=[],
                           help="Principal allowed to retrieve the managed password (repeatable)")
    provision.add_argument("--spn", action="append", dest="spns", default=[],
                           help="Service principal name (repeatable)")
    provision.add_argument("--description")
    provision.add_argument("--ou", dest="organizational_unit", help="Distinguished name of the target container")
    provision.add_argument("--kds-root-key-id")
    provision.add_argument("--password-interval-days", type=int)
    provision.add_argument("--json", action="store_true", help="Print the raw JSON report")

    serve = subcommands.add_parser("serve", help="Run the webhook endpoint")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    history = subcommands.add_parser("history", help="Show recent audit records")
    history.add_argument("--limit", type=int, default=20)

    return parser


def _payload_from_args(args: argparse.Namespace) -> dict:
    payload = {
        "AccountName": args.account_name,
        "DnsHostName": args.dns_host_name,
        "PrincipalsAllowedToRetrieve": args.principals,
        "ServicePrincipalNames": args.spns,
        "Description": args.description,
        "OrganizationalUnit": args.organizational_unit,
        "KdsRootKeyId": args.kds_root_key_id,
    }
    if args.password_interval_days is not None:
        payload["ManagedPasswordIntervalInDays"] = args.password_interval_days
    return payload


def render_result(result: ProvisioningResult) -> None:
    table = Table(show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in to_response(result).items():
        table.add_row(key, str(value))

    console.print(Panel(table, title=result.status, style=STATUS_STYLES.get(result.status, "bold")))


async def run_provision(args: argparse.Namespace) -> ProvisioningResult:
    settings = get_settings()
    workflow = ProvisioningWorkflow(get_credential_broker(settings), get_directory_client(settings), settings)
    return await workflow.provision(_payload_from_args(args))


def show_history(limit: int) -> int:
    settings = get_settings()
    if not settings.audit_db_path:
        console.print("[yellow]Auditing is disabled. Set GMSA_AUDIT_DB_PATH to enable it.[/yellow]")
        return 1

    table = Table(title="Recent provisioning outcomes", show_header=True, header_style="bold magenta")
    for column in ("Timestamp", "Account", "Status"):
        table.add_column(column)
    for row in recent_actions(settings.audit_db_path, limit):
        table.add_row(row["timestamp"], row["target"], row["status"])
    console.print(table)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)
    if args.trace:
        setup_telemetry()

    if args.command == "serve":
        import uvicorn

        uvicorn.run("webhook:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    if args.command == "history":
        return show_history(args.limit)

    try:
        result = asyncio.run(run_provision(args))
    except ValueError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2

    if args.json:
        print(json.dumps(to_response(result), indent=2))
    else:
        render_result(result)

    return 1 if isinstance(result, FailedResult) else 0


if __name__ == "__main__":
    sys.exit(main())
