#!/usr/bin/env python3
"""
shealth — session health CLI

Usage:
    shealth gather <session_id> [--transcript PATH] [--input FILE]
                   [--project PATH] [--config-dir DIR] [--email ADDR]
                                        Gather and store one snapshot
    shealth status [<session_id>]       Stored snapshot, or all sessions
    shealth sources                     Registered data sources by tier
    shealth intents                     Pending refresh intents
    shealth clean [--max-age MS]        Remove stale markers and old sessions
    shealth quota [--config-dir DIR] [--email ADDR]
                                        Resolve the active quota slot
    shealth refresh [--max N]           Satisfy pending refresh intents

Add -v for debug logging.
"""

from __future__ import annotations

import json
import logging
import sys


def _json_out(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cmd_gather(args):
    from sessionhealth.api import gather
    if not args or args[0].startswith("-"):
        _err("Usage: shealth gather <session_id> [--transcript PATH] [--input FILE]")

    json_input = None
    input_path = _get_opt(args, "--input")
    if input_path:
        try:
            with open(input_path) as f:
                json_input = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            _err(f"Cannot read input {input_path}: {e}")

    result = gather(
        args[0],
        transcript_path=_get_opt(args, "--transcript"),
        json_input=json_input,
        project_path=_get_opt(args, "--project"),
        config_dir=_get_opt(args, "--config-dir"),
        auth_email=_get_opt(args, "--email"),
    )
    health = result["health"]
    print(f"  session:  {health['session_id']}")
    print(f"  status:   {health['health']['status']}")
    for issue in health["health"]["issues"]:
        print(f"  issue:    {issue}")
    print(f"  model:    {health['model']['value']}")
    print(f"  context:  {health['context']['percent_used']}%")
    print(f"  took:     {health['performance']['gather_duration_ms']}ms")
    print(f"  changed:  {'yes' if result['changed'] else 'no'}")


def cmd_status(args):
    from sessionhealth.api import status
    session_id = args[0] if args and not args[0].startswith("-") else None
    result = status(session_id)
    if "error" in result:
        _err(result["error"])
    _json_out(result)


def cmd_sources(args):
    from sessionhealth.api import sources
    result = sources()
    print(f"{result['count']} sources registered")
    for tier, ids in result["by_tier"].items():
        print(f"  tier {tier}: {', '.join(ids) or '-'}")


def cmd_intents(args):
    from sessionhealth.api import intents
    _json_out(intents())


def cmd_clean(args):
    from sessionhealth.api import clean
    max_age = _get_opt(args, "--max-age")
    _json_out(clean(intent_max_age_ms=int(max_age) if max_age else None))


def cmd_quota(args):
    from sessionhealth.api import quota
    _json_out(quota(
        config_dir=_get_opt(args, "--config-dir"),
        email=_get_opt(args, "--email"),
    ))


def cmd_refresh(args):
    from sessionhealth.api import refresh
    max_str = _get_opt(args, "--max") or "50"
    _json_out(refresh(max_intents=int(max_str)))


COMMANDS = {
    "gather": cmd_gather,
    "status": cmd_status,
    "sources": cmd_sources,
    "intents": cmd_intents,
    "clean": cmd_clean,
    "quota": cmd_quota,
    "refresh": cmd_refresh,
}


def _get_opt(args, flag):
    """Extract value after a flag from args list."""
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            return args[idx + 1]
    return None


def _err(msg):
    print(msg, file=sys.stderr)
    sys.exit(1)


def main():
    args = sys.argv[1:]
    verbose = "-v" in args
    args = [a for a in args if a != "-v"]
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    if not args or args[0] in ("-h", "--help", "help"):
        print(__doc__.strip())
        sys.exit(0)

    cmd = args[0]
    handler = COMMANDS.get(cmd)
    if not handler:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        print(f"Available: {', '.join(COMMANDS.keys())}", file=sys.stderr)
        sys.exit(1)

    handler(args[1:])


if __name__ == "__main__":
    main()
