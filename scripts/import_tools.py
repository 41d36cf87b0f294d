"""Import API tool definitions from a JSON seed file into the tool store."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, List

from api_tool_adapter.models import SecuritySecrets
from api_tool_adapter.openapi import validate_tool_definition
from api_tool_adapter.tool_store import ToolStore


def _load_seed(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if isinstance(data, dict):
        data = data.get("tools", [])
    return data


def _build_payload(item: Dict[str, Any], verified: bool) -> Dict[str, Any]:
    return {
        "name": (item.get("name") or "").strip(),
        "description": item.get("description") or "",
        "utility_provider": (item.get("utilityProvider") or item.get("utility_provider") or "").lower(),
        "openapi_specification": item.get("openapiSpecification") or item.get("openapi_specification"),
        "security_option": item.get("securityOption") or item.get("security_option"),
        "security_secrets": item.get("securitySecrets") or item.get("security_secrets") or {},
        "is_verified": bool(item.get("isVerified", verified)),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Import API tool definitions into the tool store")
    parser.add_argument(
        "--seed",
        default=os.getenv("API_TOOLS_SEED_PATH", ""),
        help="Path to a JSON list of tool definitions",
    )
    parser.add_argument(
        "--database-url",
        default=os.getenv("ADAPTER_DATABASE_URL", ""),
        help="Adapter Postgres database URL",
    )
    parser.add_argument(
        "--verified",
        action="store_true",
        help="Mark imported tools as verified unless the seed says otherwise",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the seed without writing to the database",
    )

    args = parser.parse_args()
    if not args.seed:
        raise SystemExit("Seed path missing. Set --seed or API_TOOLS_SEED_PATH.")
    if not args.database_url and not args.dry_run:
        raise SystemExit("Database URL missing. Set --database-url or ADAPTER_DATABASE_URL.")

    seed_path = Path(args.seed).expanduser().resolve()
    if not seed_path.exists():
        raise SystemExit(f"Seed file not found: {seed_path}")

    store = None if args.dry_run else ToolStore(args.database_url)
    existing_names = {tool.name for tool in store.list_tools()} if store else set()

    created = 0
    skipped = 0
    invalid = 0
    for item in _load_seed(seed_path):
        payload = _build_payload(item, args.verified)
        name = payload["name"]
        if not name or not payload["utility_provider"]:
            invalid += 1
            print(f"Skipping entry without name or utilityProvider: {name or '<unnamed>'}")
            continue
        if name in existing_names:
            skipped += 1
            continue

        errors = validate_tool_definition(
            payload["openapi_specification"],
            payload["security_option"],
            SecuritySecrets.from_mapping(payload["security_secrets"]),
        )
        if errors:
            invalid += 1
            print(f"Invalid tool '{name}': {'; '.join(errors)}")
            continue

        if store:
            store.create_tool(payload)
        created += 1
        existing_names.add(name)

    print(f"Imported tools: {created} created, {skipped} skipped, {invalid} invalid")


if __name__ == "__main__":
    main()
