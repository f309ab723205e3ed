"""
Allowance CLI: spending policies and x402 payments for AI agents.

Commands:
    allowance policy compose   Compose and store a policy from JSON rules
    allowance policy show      Show a stored policy
    allowance policy list      List stored policies
    allowance policy decode    Decode an ABI-encoded policy
    allowance policy onchain   Print the on-chain agent policy tuple
    allowance header decode    Decode an X-PAYMENT header
    allowance pay              Pay for one x402-protected resource
    allowance audit            View audit trail
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .audit import AuditTrail, EventType
from .budget import BudgetPolicy, BudgetTracker
from .errors import AllowanceError
from .money import format_token_amount
from .onchain import agent_policy_from_rules, encode_agent_policy
from .policy import Operator, Policy, compose_policy
from .policy_store import PolicyStore
from .rules import rule_from_dict
from .x402 import parse_payment_header
from .x402_client import X402Config, X402PaymentClient


AGENT_KEY_ENV = "ALLOWANCE_AGENT_KEY"


def _fail(message: str):
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _load_rules_json(rules_json: str) -> list:
    source = Path(rules_json)
    text = source.read_text(encoding="utf-8") if source.is_file() else rules_json
    raw = json.loads(text)
    if isinstance(raw, dict):
        raw = raw.get("rules", [raw])
    if not isinstance(raw, list):
        raise ValueError("Rules JSON must be a list of rule objects")
    return [rule_from_dict(item) for item in raw]


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


def _echo_policy(policy: Policy):
    click.echo(f"   ID:       {policy.id}")
    click.echo(f"   Operator: {policy.operator.value}")
    for rule in policy.rules:
        click.echo(f"   Rule:     {json.dumps(rule.to_dict())}")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """Allowance: spending policies and x402 payments for AI agents."""
    pass


@main.group("policy")
def policy_group():
    """Compose, store and inspect spending policies."""
    pass


@policy_group.command("compose")
@click.argument("rules_json")
@click.option(
    "--operator",
    type=click.Choice([op.value for op in Operator], case_sensitive=False),
    default=Operator.AND.value,
    help="How rules combine (default: AND)",
)
@click.option("--agent", default=None, help="Agent address recorded in the audit trail")
def policy_compose(rules_json: str, operator: str, agent: Optional[str]):
    """Compose a policy from RULES_JSON (a JSON string or file) and store it."""
    try:
        rules = _load_rules_json(rules_json)
        policy = compose_policy(rules, operator.upper())
    except (ValueError, AllowanceError) as e:
        _fail(f"Failed to compose policy: {e}")

    PolicyStore().save(policy)
    AuditTrail().log(
        EventType.POLICY_COMPOSED,
        agent=agent.lower() if agent else None,
        policy_id=policy.id,
        details={"operator": policy.operator.value, "rules": len(policy.rules)},
    )

    click.echo(f"✅ Policy composed: {policy.id}")
    click.echo(f"   Operator: {policy.operator.value}")
    click.echo(f"   Rules:    {len(policy.rules)}")
    click.echo(f"   Encoded:  {policy.encoded_hex}")


@policy_group.command("show")
@click.argument("policy_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print as JSON")
def policy_show(policy_id: str, as_json: bool):
    """Show a stored policy."""
    try:
        policy = PolicyStore().get(policy_id)
    except (ValueError, AllowanceError) as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(policy.to_dict(), indent=2))
        return
    click.echo(f"✅ Policy {policy.id}")
    _echo_policy(policy)
    click.echo(f"   Encoded:  {policy.encoded_hex}")


@policy_group.command("list")
def policy_list():
    """List stored policies."""
    try:
        policies = PolicyStore().list()
    except ValueError as e:
        _fail(str(e))

    if not policies:
        click.echo("No policies stored.")
        return
    for policy in policies:
        types = ", ".join(r.rule_type.value for r in policy.rules)
        click.echo(f"  {policy.id} {policy.operator.value} [{types}]")


@policy_group.command("decode")
@click.argument("encoded")
def policy_decode(encoded: str):
    """Decode an ABI-encoded policy and print it as JSON."""
    try:
        policy = Policy.from_encoded(encoded)
    except (ValueError, AllowanceError) as e:
        _fail(f"Failed to decode policy: {e}")
    click.echo(json.dumps(policy.to_dict(), indent=2))


@policy_group.command("onchain")
@click.argument("policy_id")
def policy_onchain(policy_id: str):
    """Print the validator-module AgentPolicy derived from a stored policy."""
    try:
        policy = PolicyStore().get(policy_id)
        agent_policy = agent_policy_from_rules(policy)
    except (ValueError, AllowanceError) as e:
        _fail(str(e))

    click.echo(json.dumps(agent_policy.to_dict(), indent=2))
    click.echo(f"0x{encode_agent_policy(agent_policy).hex()}")


@main.group("header")
def header_group():
    """Inspect x402 headers."""
    pass


@header_group.command("decode")
@click.argument("header")
def header_decode(header: str):
    """Decode an X-PAYMENT header value."""
    try:
        parsed = parse_payment_header(header)
    except AllowanceError as e:
        _fail(str(e))

    click.echo(json.dumps(
        {
            "x402Version": parsed.x402_version,
            "scheme": parsed.scheme,
            "network": parsed.network,
            "signature": parsed.signature,
            "authorization": parsed.authorization.to_dict(),
        },
        indent=2,
    ))


@main.command()
@click.argument("url")
@click.option("--agent-key", prompt=True, hide_input=True, envvar=AGENT_KEY_ENV,
              help=f"Agent private key (hex); read from {AGENT_KEY_ENV} when set")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --agent-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--policy", "policy_id", default=None, help="Derive limits from a stored policy")
@click.option("--max-per-request", type=int, default=None, help="Max per request (base units)")
@click.option("--max-daily", type=int, default=None, help="Max per rolling 24h (base units)")
@click.option("--total-budget", type=int, default=None, help="Optional lifetime cap (base units)")
@click.option("--domain", "domains", multiple=True, help="Allowed resource host (repeatable)")
@click.option("--network", "networks", multiple=True, help="Accepted x402 network (repeatable)")
@click.option("--deadline", type=float, default=None, help="Handshake deadline in seconds")
@click.option("--method", default="GET", help="HTTP method (default: GET)")
def pay(
    url: str,
    agent_key: str,
    unsafe_allow_key_arg: bool,
    policy_id: Optional[str],
    max_per_request: Optional[int],
    max_daily: Optional[int],
    total_budget: Optional[int],
    domains: tuple[str, ...],
    networks: tuple[str, ...],
    deadline: Optional[float],
    method: str,
):
    """Fetch URL, paying once via x402 if the server asks."""
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source("agent_key") == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --agent-key from argv. Re-run with prompt input, set "
            f"{AGENT_KEY_ENV}, or pass --unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)

    try:
        account = Account.from_key(_resolve_private_key(agent_key))
        if policy_id:
            budget_policy = BudgetPolicy.from_policy(
                PolicyStore().get(policy_id),
                total_budget=total_budget,
                allowed_domains=domains,
            )
        elif max_per_request is not None and max_daily is not None:
            budget_policy = BudgetPolicy(
                max_per_request=max_per_request,
                max_daily=max_daily,
                total_budget=total_budget,
                allowed_domains=domains,
            )
        else:
            raise ValueError("Provide --policy or both --max-per-request and --max-daily")
    except (ValueError, AllowanceError) as e:
        _fail(str(e))

    config = X402Config(deadline_seconds=deadline)
    if networks:
        config.networks = tuple(networks)

    tracker = BudgetTracker(budget_policy)
    with X402PaymentClient(account=account, tracker=tracker, config=config, audit=AuditTrail()) as client:
        result = client.pay(url, method=method.upper())

    if result.paid:
        record = result.record
        click.echo(f"✅ Paid {format_token_amount(record.amount)} to {record.pay_to}")
        click.echo(f"   Status:   {result.status_code}")
        click.echo(f"   Network:  {record.network}")
        if record.tx_hash:
            click.echo(f"   Tx:       {record.tx_hash}")
    elif result.success:
        click.echo(f"✅ No payment required ({result.status_code})")
    else:
        _fail(f"Payment rejected ({result.failed_check}): {result.reason}")

    if result.response is not None and result.response.text:
        click.echo(result.response.text)


@main.command()
@click.option("--agent", default=None, help="Filter by agent address")
@click.option("--policy", "policy_id", default=None, help="Filter by policy id")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(agent: Optional[str], policy_id: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    try:
        events = trail.read_events(agent=agent, policy_id=policy_id, limit=limit)
    except RuntimeError as e:
        _fail(str(e))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        resource = f" → {event.resource}" if event.resource else ""
        policy = f" {event.policy_id[:10]}" if event.policy_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{policy}{amount}{resource}{reason}")


if __name__ == "__main__":
    main()
