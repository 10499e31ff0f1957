"""
Configuration parameters for zkcompose.

Defines endpoints, credentials, polling cadence and submission limits.
Values are layered: dataclass defaults, then an optional JSON file, then
environment variables (a `.env` file is loaded first if present).
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from zkcompose.crypto import is_valid_address


@dataclass
class ComposerConfig:
    """Orchestrator configuration"""

    # Programs
    program_manifest: Optional[str] = None  # JSON manifest; None uses bundled guests
    inner_program: str = "mod-exp"
    outer_program: str = "is-even"

    # Remote proving service
    remote_url: str = ""
    remote_api_key: str = ""
    remote_request_timeout: float = 30.0  # Per-call network timeout
    submit_retries: int = 3
    submit_retry_backoff: float = 1.0
    proof_kind: str = "groth16"

    # Polling (seconds)
    poll_initial_interval: float = 5.0
    poll_backoff_factor: float = 2.0
    poll_max_interval: float = 60.0
    poll_timeout: float = 1800.0  # 30 minutes

    # Local proving
    local_workers: int = 2
    local_prover_command: Optional[str] = None  # External prover CLI; None uses dev executor

    # Chain
    rpc_url: str = ""
    chain_id: int = 0
    private_key: str = ""
    contract: str = ""
    function_signature: str = "submit(bytes,bytes)"
    seal_selector: str = ""  # 4-byte hex prefix for the seal
    confirmations: int = 1
    tx_timeout: float = 300.0
    tx_poll_interval: float = 2.0
    max_resubmits: int = 3

    # Paths
    data_dir: Path = Path("~/.zkcompose")

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()

    def validate(self, require_remote: bool = True, require_chain: bool = True) -> List[str]:
        """
        Check the configuration.

        Returns:
            List of problems, empty when valid
        """
        problems = []

        if self.poll_initial_interval <= 0:
            problems.append("poll_initial_interval must be positive")
        if self.poll_backoff_factor < 1:
            problems.append("poll_backoff_factor must be >= 1")
        if self.poll_max_interval < self.poll_initial_interval:
            problems.append("poll_max_interval must be >= poll_initial_interval")
        if self.poll_timeout <= 0:
            problems.append("poll_timeout must be positive")
        if self.submit_retries < 1:
            problems.append("submit_retries must be >= 1")
        if self.local_workers < 1:
            problems.append("local_workers must be >= 1")

        if require_remote and not self.remote_url:
            problems.append("remote_url is required (ZKCOMPOSE_REMOTE_URL or BONSAI_API_URL)")

        if require_chain:
            if not self.rpc_url:
                problems.append("rpc_url is required")
            if self.chain_id <= 0:
                problems.append("chain_id is required")
            if not self.private_key:
                problems.append("private_key is required (ETH_WALLET_PRIVATE_KEY)")
            if not is_valid_address(self.contract):
                problems.append(f"contract is not a valid address: {self.contract!r}")
            if self.seal_selector and len(self.seal_selector.removeprefix("0x")) != 8:
                problems.append("seal_selector must be 4 bytes of hex")

        return problems

    def polling_policy(self):
        from zkcompose.core.prover.backend import PollingPolicy

        return PollingPolicy(
            initial_interval=self.poll_initial_interval,
            backoff_factor=self.poll_backoff_factor,
            max_interval=self.poll_max_interval,
            timeout=self.poll_timeout,
        )


# Environment variable -> field name. Names used by Bonsai and Foundry
# tooling are accepted alongside the ZKCOMPOSE_ prefix.
ENV_ALIASES = {
    "BONSAI_API_URL": "remote_url",
    "BONSAI_API_KEY": "remote_api_key",
    "ETH_WALLET_PRIVATE_KEY": "private_key",
    "ETH_RPC_URL": "rpc_url",
}


def _coerce(field_type, raw):
    if field_type in (int, "int"):
        return int(raw)
    if field_type in (float, "float"):
        return float(raw)
    if field_type in (Path, "Path"):
        return Path(raw)
    return raw


def load_config(config_path: Optional[str] = None, env_file: Optional[str] = None) -> ComposerConfig:
    """
    Load configuration from file and environment.

    Args:
        config_path: Optional path to a JSON config file
        env_file: Optional .env file; defaults to ./.env when present

    Returns:
        ComposerConfig instance

    Raises:
        ValueError: on unknown keys or unparsable values
    """
    load_dotenv(env_file or find_dotenv(usecwd=True), override=False)

    field_types = {f.name: f.type for f in fields(ComposerConfig)}
    values = {}

    if config_path:
        data = json.loads(Path(config_path).read_text(encoding="utf-8"))
        unknown = set(data) - set(field_types)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        values.update(data)

    for env_name, field_name in ENV_ALIASES.items():
        if os.environ.get(env_name):
            values[field_name] = os.environ[env_name]

    for field_name in field_types:
        env_name = f"ZKCOMPOSE_{field_name.upper()}"
        if os.environ.get(env_name):
            values[field_name] = os.environ[env_name]

    try:
        coerced = {
            name: _coerce(field_types[name], raw) if isinstance(raw, str) else raw
            for name, raw in values.items()
        }
    except ValueError as e:
        raise ValueError(f"Invalid configuration value: {e}")

    return ComposerConfig(**coerced)
