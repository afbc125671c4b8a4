#!/usr/bin/env python3
"""
Python entrypoint to avoid relying on /bin/sh in hardened runtime images.
Usage: entrypoint.py <gms|frontend|actions|upgrade> [command ...]
Prepares the service environment and execs the provided command.
"""
import os
import sys


def main():
  venv_bin = "/app/.venv/bin"
  if os.path.isdir(venv_bin):
    os.environ["PATH"] = venv_bin + ":" + os.environ.get("PATH", "")
    print(f"[startup] Activated venv at {venv_bin}", file=sys.stderr)

  from datahub_bootstrap.assembler import PROFILES
  from datahub_bootstrap.bootstrap import main as bootstrap_main

  if len(sys.argv) <= 1 or sys.argv[1] not in PROFILES:
    print(f"[startup] ERROR: first argument must be one of: {', '.join(sorted(PROFILES))}", file=sys.stderr)
    sys.exit(1)

  bootstrap_main(sys.argv[1], sys.argv[2:])


if __name__ == "__main__":
  main()
