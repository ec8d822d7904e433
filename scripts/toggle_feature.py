from __future__ import annotations

import argparse
import asyncio
import json
import sys

from togglecascade.core.logging import configure_logging
from togglecascade.services.activation import toggle_feature


_STATES = {"on": True, "off": False}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Enable or disable a feature for a tenant and cascade to dependent records"
    )
    parser.add_argument("tenant_id", help="Tenant whose feature is toggled")
    parser.add_argument("feature_key", help="Feature key, e.g. coupons")
    parser.add_argument("state", choices=sorted(_STATES), help="Target activation state")
    return parser


async def _toggle(tenant_id: str, feature_key: str, active: bool) -> int:
    outcome = await toggle_feature(tenant_id, feature_key, active)
    print(json.dumps(outcome.as_dict(), indent=2, sort_keys=True))
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(_toggle(args.tenant_id, args.feature_key, _STATES[args.state]))
    except Exception as exc:  # noqa: BLE001 - surface toggle failures clearly
        print(f"toggle_feature failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
