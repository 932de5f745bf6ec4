"""Rule definitions and one evaluation function per rule kind.

Each evaluation function takes the rule, the event, the rule's own mutable
state and the window aggregator, and returns an ``Alert`` or ``None``.
Functions ignore event types they do not care about, so the evaluator can
offer every event to every rule of a chain side.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from fuel_watchtower.config import (
    AccountFundsAlert,
    BlockProductionAlert,
    GenericAlert,
    TransferAlert,
    WatchtowerConfig,
    rule_identity,
)
from fuel_watchtower.engine.models import (
    Alert,
    AlertAction,
    AlertDetail,
    AlertLevel,
    RuleIdentity,
    RuleKind,
)
from fuel_watchtower.engine.window import WindowAggregator
from fuel_watchtower.watcher.models import (
    BalanceSample,
    BlockProduced,
    ChainSide,
    CheckTick,
    Connectivity,
    ContractKind,
    Direction,
    Event,
    StateCommit,
    Token,
    ValueTransfer,
)

_CHAIN_NAMES = {ChainSide.FUEL: "Fuel", ChainSide.ETHEREUM: "Ethereum"}

# (contract, direction) each windowed kind listens to
_TRANSFER_ROUTES: dict[RuleKind, tuple[ContractKind, Direction]] = {
    RuleKind.PORTAL_DEPOSIT: (ContractKind.PORTAL, Direction.DEPOSIT),
    RuleKind.PORTAL_WITHDRAW: (ContractKind.PORTAL, Direction.WITHDRAW),
    RuleKind.GATEWAY_DEPOSIT: (ContractKind.GATEWAY, Direction.DEPOSIT),
    RuleKind.GATEWAY_WITHDRAW: (ContractKind.GATEWAY, Direction.WITHDRAW),
}


@dataclass(frozen=True)
class Rule:
    """A configured, enabled rule ready for evaluation."""

    identity: RuleIdentity
    level: AlertLevel
    action: AlertAction = AlertAction.NONE
    max_block_time: int | None = None
    min_balance: Decimal | None = None
    time_frame: int | None = None
    amount: Decimal | None = None
    token: Token | None = None

    @property
    def kind(self) -> RuleKind:
        return self.identity.rule_kind

    @property
    def chain_side(self) -> ChainSide:
        return self.identity.chain_side

    @classmethod
    def from_config(cls, side: ChainSide, kind: RuleKind, config: GenericAlert) -> Rule:
        rule = cls(
            identity=rule_identity(side, kind, config),
            level=config.alert_level,
            action=config.alert_action,
        )
        if isinstance(config, BlockProductionAlert):
            return replace(rule, max_block_time=config.max_block_time)
        if isinstance(config, AccountFundsAlert):
            return replace(rule, min_balance=config.min_balance)
        if isinstance(config, TransferAlert):
            return replace(
                rule,
                time_frame=config.time_frame,
                amount=config.amount,
                token=Token(address=config.token_address, name=config.token_name),
            )
        return rule


def build_rules(config: WatchtowerConfig) -> list[Rule]:
    """Build every enabled rule of the config, in file order."""
    return [Rule.from_config(side, kind, rule) for side, kind, rule in config.iter_rules()]


@dataclass
class RuleState:
    """Mutable per-identity state, owned by the evaluator."""

    last_block_at: datetime | None = None
    last_block_height: int | None = None
    disconnected_since: datetime | None = None


RuleHandler = Callable[[Rule, Event, RuleState, WindowAggregator], Alert | None]


def _alert(rule: Rule, fired_at: datetime, title: str, description: str, **values: object) -> Alert:
    return Alert(
        identity=rule.identity,
        level=rule.level,
        fired_at=fired_at,
        detail=AlertDetail(
            title=title,
            description=description,
            values={k: str(v) for k, v in values.items()},
        ),
        action=rule.action,
    )


def evaluate_connection(
    rule: Rule, event: Event, state: RuleState, window: WindowAggregator
) -> Alert | None:
    """Fire on every failed connection check."""
    if not isinstance(event, Connectivity):
        return None
    if event.connected:
        state.disconnected_since = None
        return None

    if state.disconnected_since is None:
        state.disconnected_since = event.observed_at
    chain = _CHAIN_NAMES[rule.chain_side]
    return _alert(
        rule,
        event.observed_at,
        f"Failed to check {chain.lower()} connection",
        f"Failed to check {chain.lower()} connection: {event.error or 'unreachable'}",
        disconnected_since=state.disconnected_since.isoformat(),
    )


def evaluate_block_production(
    rule: Rule, event: Event, state: RuleState, window: WindowAggregator
) -> Alert | None:
    """Fire on every tick that finds the chain head older than max_block_time."""
    if isinstance(event, BlockProduced):
        if state.last_block_height is None or event.height > state.last_block_height:
            state.last_block_height = event.height
            state.last_block_at = event.observed_at
        return None

    if not isinstance(event, CheckTick):
        return None

    if state.last_block_at is None:
        # Nothing seen yet; measure from the first tick.
        state.last_block_at = event.observed_at
        return None

    elapsed = (event.observed_at - state.last_block_at).total_seconds()
    if elapsed < rule.max_block_time:
        return None

    chain = _CHAIN_NAMES[rule.chain_side]
    return _alert(
        rule,
        event.observed_at,
        f"{chain} block is taking long",
        f"Next {chain.lower()} block is taking longer than {rule.max_block_time} seconds. "
        f"Last block was {int(elapsed)} seconds ago.",
        seconds_since_last_block=int(elapsed),
        last_block_height=state.last_block_height,
    )


def evaluate_account_funds(
    rule: Rule, event: Event, state: RuleState, window: WindowAggregator
) -> Alert | None:
    """Fire on every balance sample below min_balance."""
    if not isinstance(event, BalanceSample):
        return None
    if event.balance >= rule.min_balance:
        return None

    chain = _CHAIN_NAMES[rule.chain_side]
    return _alert(
        rule,
        event.observed_at,
        f"{chain} account low on funds",
        f"{chain} account ({event.account}) is low on funds. Current balance: {event.balance}",
        account=event.account,
        balance=event.balance,
        min_balance=rule.min_balance,
    )


def evaluate_invalid_state_commit(
    rule: Rule, event: Event, state: RuleState, window: WindowAggregator
) -> Alert | None:
    """Fire on every commit that does not match a known Fuel block."""
    if not isinstance(event, StateCommit) or event.valid:
        return None
    return _alert(
        rule,
        event.observed_at,
        "Invalid commit was made on the state contract",
        f"An invalid commit was made on the state contract. Hash: {event.commit_hash}",
        commit_hash=event.commit_hash,
    )


def transfer_matches(rule: Rule, event: ValueTransfer) -> bool:
    """Whether a transfer feeds a windowed rule."""
    contract, direction = _TRANSFER_ROUTES[rule.kind]
    if event.chain is not rule.chain_side:
        return False
    if event.contract is not contract or event.direction is not direction:
        return False
    if contract is ContractKind.GATEWAY:
        return rule.token is not None and rule.token.matches(event.token.address)
    return True


def evaluate_windowed_amount(
    rule: Rule, event: Event, state: RuleState, window: WindowAggregator
) -> Alert | None:
    """Fire when the trailing sum reaches the rule's threshold."""
    if not isinstance(event, ValueTransfer) or not transfer_matches(rule, event):
        return None

    total = window.observe(rule.identity, event.occurred_at, event.amount)
    if total < rule.amount:
        return None

    chain = _CHAIN_NAMES[rule.chain_side]
    contract, direction = _TRANSFER_ROUTES[rule.kind]
    token = rule.token or Token()
    verb = "deposit" if direction is Direction.DEPOSIT else "withdrawal"
    past = "deposited" if direction is Direction.DEPOSIT else "withdrawn"
    if contract is ContractKind.PORTAL:
        title = f"{chain} Chain: Base asset is above {verb} threshold."
    else:
        title = f"{chain} Chain: {token.name} at address {token.address} is above {verb} threshold"
    return _alert(
        rule,
        event.occurred_at,
        title,
        f"{token.name} {verb} threshold of {rule.amount} over {rule.time_frame} seconds "
        f"has been reached. Amount {past}: {total}",
        window_sum=total,
        threshold=rule.amount,
        time_frame=rule.time_frame,
        token=token.name,
    )


RULE_HANDLERS: dict[RuleKind, RuleHandler] = {
    RuleKind.CONNECTION: evaluate_connection,
    RuleKind.BLOCK_PRODUCTION: evaluate_block_production,
    RuleKind.ACCOUNT_FUNDS: evaluate_account_funds,
    RuleKind.INVALID_STATE_COMMIT: evaluate_invalid_state_commit,
    RuleKind.PORTAL_DEPOSIT: evaluate_windowed_amount,
    RuleKind.PORTAL_WITHDRAW: evaluate_windowed_amount,
    RuleKind.GATEWAY_DEPOSIT: evaluate_windowed_amount,
    RuleKind.GATEWAY_WITHDRAW: evaluate_windowed_amount,
}
