from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple, Union

from web3 import Web3

from .errors import ConfigError


class RouterProtocol(str, Enum):
    V2 = "v2"
    V3 = "v3"


@dataclass(frozen=True)
class Venue:
    """
    A liquidity source queried for quotes.

    - name: label used in logs and in the store, e.g. "QuickSwap"
    - router_address: V2 router or V3 quoter contract
    - protocol: "v2" (getAmountsOut) or "v3" (quoteExactInputSingle)
    - fee_tier: V3 pool fee in hundredths of a bip (ignored for v2)
    """

    name: str
    router_address: str
    protocol: RouterProtocol = RouterProtocol.V2
    fee_tier: int = 3000


@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int


@dataclass(frozen=True)
class AssetPair:
    """base is sold into the venue, quote is what comes out (e.g. WETH -> USDC)."""

    base: Token
    quote: Token

    @property
    def symbol(self) -> str:
        return f"{self.base.symbol}{self.quote.symbol}"


@dataclass(frozen=True)
class EvaluationThresholds:
    """
    All values are Decimal, denominated in the quote asset except trade_size
    which is in base-asset units.
    """

    min_profit: Decimal
    gas_cost: Decimal
    trade_size: Decimal


@dataclass(frozen=True)
class MonitorConfig:
    """
    Read-only configuration built once at startup.

    - rpc_url: JSON-RPC endpoint shared by all venues
    - venues: at least two distinct venues on the same chain
    - pair: the asset pair being compared
    - thresholds: min profit / gas cost / trade size
    - poll_interval_sec: fixed interval between cycle starts
    - oracle_timeout_sec: per-call bound, must be shorter than the interval
    - db_path: SQLite file for detected opportunities
    - router_abi_path: optional V2 router ABI json (built-in ABI otherwise)
    """

    rpc_url: str
    venues: Tuple[Venue, ...]
    pair: AssetPair
    thresholds: EvaluationThresholds

    poll_interval_sec: float = 10.0
    oracle_timeout_sec: float = 5.0
    db_path: Path = Path("arbitrage.db")
    router_abi_path: Optional[Path] = None

    def venue(self, name: str) -> Venue:
        for v in self.venues:
            if v.name == name:
                return v
        raise KeyError(f"Unknown venue: {name}")

    def validate(self) -> "MonitorConfig":
        if not self.rpc_url:
            raise ConfigError("rpc_url is required")

        if len(self.venues) < 2:
            raise ConfigError(f"At least two venues are required, got {len(self.venues)}")

        names = [v.name for v in self.venues]
        if len(set(names)) != len(names):
            raise ConfigError(f"Venue names must be unique: {names}")

        for v in self.venues:
            _require_address(v.router_address, f"venue {v.name} router")
            if v.protocol == RouterProtocol.V3 and not 0 < v.fee_tier < 2**24:
                raise ConfigError(f"Invalid V3 fee tier for {v.name}: {v.fee_tier}")

        for label, tok in (("base", self.pair.base), ("quote", self.pair.quote)):
            _require_address(tok.address, f"{label} token")
            if not 0 <= tok.decimals <= 36:
                raise ConfigError(f"Invalid decimals for {label} token: {tok.decimals}")

        if Web3.to_checksum_address(self.pair.base.address) == Web3.to_checksum_address(self.pair.quote.address):
            raise ConfigError("base and quote tokens must differ")

        if self.thresholds.trade_size <= 0:
            raise ConfigError("trade_size must be > 0")
        scaled = self.thresholds.trade_size.scaleb(self.pair.base.decimals)
        if scaled != scaled.to_integral_value():
            raise ConfigError(
                f"trade_size={self.thresholds.trade_size} has more than "
                f"{self.pair.base.decimals} decimals for {self.pair.base.symbol}"
            )
        if self.thresholds.gas_cost < 0:
            raise ConfigError("est_gas_cost must be >= 0")

        if self.poll_interval_sec <= 0:
            raise ConfigError("refresh_rate must be > 0")
        if not 0 < self.oracle_timeout_sec < self.poll_interval_sec:
            raise ConfigError(
                f"oracle_timeout_sec={self.oracle_timeout_sec} must be > 0 and shorter "
                f"than refresh_rate={self.poll_interval_sec}"
            )
        return self


def _require_address(value: str, what: str) -> None:
    if not value or not Web3.is_address(value):
        raise ConfigError(f"Invalid address for {what}: {value!r}")


def _decimal(value: Any, what: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigError(f"Invalid number for {what}: {value!r}") from exc
    if not d.is_finite():
        raise ConfigError(f"Invalid number for {what}: {value!r}")
    return d


def _int(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {what}: {value!r}") from exc


def _require(section: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in section or section[key] in (None, ""):
        raise ConfigError(f"Missing required field {where}.{key}")
    return section[key]


def _parse_venues(raw: Any) -> Tuple[Venue, ...]:
    """
    Accept both the short form

        [dex]
        quickswap = "0x..."

    and explicit tables

        [dex.uniswap]
        router = "0x..."
        protocol = "v3"
        fee = 500
    """
    if not isinstance(raw, Mapping) or not raw:
        raise ConfigError("Missing [dex] section")

    venues: List[Venue] = []
    for name, entry in raw.items():
        if isinstance(entry, str):
            venues.append(Venue(name=name, router_address=entry))
            continue
        if not isinstance(entry, Mapping):
            raise ConfigError(f"Invalid venue entry for {name}: {entry!r}")

        protocol_raw = str(entry.get("protocol", "v2")).lower()
        try:
            protocol = RouterProtocol(protocol_raw)
        except ValueError as exc:
            raise ConfigError(f"Unsupported protocol for {name}: {protocol_raw}") from exc

        venues.append(
            Venue(
                name=str(entry.get("name", name)),
                router_address=str(_require(entry, "router", f"dex.{name}")),
                protocol=protocol,
                fee_tier=_int(entry.get("fee", 3000), f"dex.{name}.fee"),
            )
        )
    return tuple(venues)


def _parse_token(raw: Any, label: str) -> Token:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Missing [tokens.{label}] section")
    return Token(
        symbol=str(raw.get("symbol", label.upper())),
        address=str(_require(raw, "address", f"tokens.{label}")),
        decimals=_int(_require(raw, "decimals", f"tokens.{label}"), f"tokens.{label}.decimals"),
    )


DEFAULT_BASE_DECIMALS = 18
DEFAULT_QUOTE_DECIMALS = 6


def _parse_pair(tokens: Mapping[str, Any], settings: Mapping[str, Any]) -> Tuple[AssetPair, bool]:
    """
    Returns (pair, flat). Two layouts are accepted:

        [tokens.base] / [tokens.quote] tables with symbol, address, decimals

    or the flat form, base first then quote:

        [tokens]
        weth = "0x..."
        usdc = "0x..."

    In the flat form decimals come from settings.base_decimals /
    settings.quote_decimals (18 / 6 by default).
    """
    if "base" in tokens or "quote" in tokens:
        pair = AssetPair(
            base=_parse_token(tokens.get("base"), "base"),
            quote=_parse_token(tokens.get("quote"), "quote"),
        )
        return pair, False

    entries = [(k, v) for k, v in tokens.items() if isinstance(v, str)]
    if len(entries) != 2 or len(entries) != len(tokens):
        raise ConfigError(
            "[tokens] needs either [tokens.base]/[tokens.quote] tables "
            f"or exactly two 'symbol = \"0x...\"' entries, got {list(tokens)}"
        )

    (base_sym, base_addr), (quote_sym, quote_addr) = entries
    pair = AssetPair(
        base=Token(
            symbol=base_sym.upper(),
            address=base_addr,
            decimals=_int(settings.get("base_decimals", DEFAULT_BASE_DECIMALS), "settings.base_decimals"),
        ),
        quote=Token(
            symbol=quote_sym.upper(),
            address=quote_addr,
            decimals=_int(settings.get("quote_decimals", DEFAULT_QUOTE_DECIMALS), "settings.quote_decimals"),
        ),
    )
    return pair, True


def _trade_size(settings: Mapping[str, Any], base: Token, flat: bool) -> Decimal:
    """
    trade_size_wei is always in base units. trade_size is in base units for
    the flat token layout and in whole tokens otherwise.
    """
    if "trade_size_wei" in settings:
        raw = _int(settings["trade_size_wei"], "settings.trade_size_wei")
        return Decimal(raw).scaleb(-base.decimals)

    value = _require(settings, "trade_size", "settings")
    if flat:
        return Decimal(_int(value, "settings.trade_size")).scaleb(-base.decimals)
    return _decimal(value, "trade_size")


def config_from_mapping(data: Mapping[str, Any], base_dir: Optional[Path] = None) -> MonitorConfig:
    """
    Build and validate a MonitorConfig from a parsed TOML document.
    Relative paths are resolved against base_dir.
    """
    base_dir = base_dir or Path.cwd()

    settings = data.get("settings")
    if not isinstance(settings, Mapping):
        raise ConfigError("Missing [settings] section")

    tokens = data.get("tokens")
    if not isinstance(tokens, Mapping):
        raise ConfigError("Missing [tokens] section")

    pair, flat = _parse_pair(tokens, settings)

    thresholds = EvaluationThresholds(
        min_profit=_decimal(_require(settings, "min_profit_usdc", "settings"), "min_profit_usdc"),
        gas_cost=_decimal(_require(settings, "est_gas_cost_usdc", "settings"), "est_gas_cost_usdc"),
        trade_size=_trade_size(settings, pair.base, flat),
    )
    poll_interval = float(settings.get("refresh_rate", 10.0))

    def _path(value: Any) -> Path:
        p = Path(str(value)).expanduser()
        return p if p.is_absolute() else (base_dir / p)

    abi_raw = settings.get("router_abi_path")

    cfg = MonitorConfig(
        rpc_url=str(data.get("rpc_url") or ""),
        venues=_parse_venues(data.get("dex")),
        pair=pair,
        thresholds=thresholds,
        poll_interval_sec=poll_interval,
        # default stays under the interval for short refresh rates
        oracle_timeout_sec=float(settings.get("oracle_timeout_sec", min(5.0, poll_interval / 2))),
        db_path=_path(settings.get("db_path", "arbitrage.db")),
        router_abi_path=_path(abi_raw) if abi_raw else None,
    )
    return cfg.validate()


def apply_env_overrides(cfg: MonitorConfig, env: Optional[Mapping[str, str]] = None) -> MonitorConfig:
    """
    Override selected fields from environment variables:

        ARB_RPC_URL, ARB_MIN_PROFIT, ARB_GAS_COST, ARB_TRADE_SIZE,
        ARB_POLL_INTERVAL_SEC, ARB_ORACLE_TIMEOUT_SEC, ARB_DB_PATH
    """
    env = os.environ if env is None else env

    thresholds = cfg.thresholds
    if env.get("ARB_MIN_PROFIT"):
        thresholds = replace(thresholds, min_profit=_decimal(env["ARB_MIN_PROFIT"], "ARB_MIN_PROFIT"))
    if env.get("ARB_GAS_COST"):
        thresholds = replace(thresholds, gas_cost=_decimal(env["ARB_GAS_COST"], "ARB_GAS_COST"))
    if env.get("ARB_TRADE_SIZE"):
        thresholds = replace(thresholds, trade_size=_decimal(env["ARB_TRADE_SIZE"], "ARB_TRADE_SIZE"))

    try:
        out = replace(
            cfg,
            rpc_url=env.get("ARB_RPC_URL") or cfg.rpc_url,
            thresholds=thresholds,
            poll_interval_sec=float(env.get("ARB_POLL_INTERVAL_SEC") or cfg.poll_interval_sec),
            oracle_timeout_sec=float(env.get("ARB_ORACLE_TIMEOUT_SEC") or cfg.oracle_timeout_sec),
            db_path=Path(env["ARB_DB_PATH"]) if env.get("ARB_DB_PATH") else cfg.db_path,
        )
    except ValueError as exc:
        raise ConfigError(f"Invalid environment override: {exc}") from exc
    return out.validate()


def load_config(
    path: Union[str, Path] = "config.toml",
    env: Optional[Mapping[str, str]] = None,
) -> MonitorConfig:
    p = Path(path).expanduser()
    try:
        raw = p.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {p}: {exc}") from exc

    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot parse config file {p}: {exc}") from exc

    return apply_env_overrides(config_from_mapping(data, base_dir=p.resolve().parent), env)
