import json
from pathlib import Path
from typing import Any

ABI_DIR: Path = Path(__file__).parent.parent / "abi"


def get_contract_abi(contract_name: str) -> list[dict[str, Any]]:
    """Fetches ABI of the given contract from the bundled abi folder.

    Args:
        contract_name: Name of the contract (without .json extension)

    Returns:
        List of ABI dictionaries for the contract

    Raises:
        FileNotFoundError: If the contract file doesn't exist
        json.JSONDecodeError: If the contract file is invalid JSON
    """
    contract_path: Path = (ABI_DIR / f"{contract_name}.json").resolve()

    with contract_path.open() as file:
        contract_data: dict[str, Any] = json.load(file)

    return contract_data["abi"]


def event_signature(event_abi: dict[str, Any]) -> str:
    """Build the canonical signature, e.g. ``Redeemed(bytes32)``."""
    arg_types = ",".join(item["type"] for item in event_abi["inputs"])
    return f"{event_abi['name']}({arg_types})"


def find_event_abi(abi: list[dict[str, Any]], event_name: str) -> dict[str, Any]:
    for entry in abi:
        if entry.get("type") == "event" and entry.get("name") == event_name:
            return entry
    raise ValueError(f"Event {event_name} not found in contract ABI")
