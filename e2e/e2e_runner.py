"""
End-to-end checks for the FHIR offline client against a live mock FHIR server.

Starts `python -m fhir_offline.mock_server` in a subprocess, then drives the real
`requests` transport through ResourceClient and OfflineResilientClient. The
offline scenario stops the server, queues writes, restarts it and replays.

Usage:
  1. Run this script: python e2e/e2e_runner.py
  2. The script will exit 0 if all checks pass, nonzero otherwise.
"""
import asyncio
import os
import subprocess
import sys
import time

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from fhir_offline.client import ResourceClient
from fhir_offline.config import ClientConfig
from fhir_offline.errors import OperationOutcomeError
from fhir_offline.mock_server import FHIR_BASE
from fhir_offline.resilience import OfflineResilientClient
from fhir_offline.schemas import QueuedOperation

# Config: Change as needed for your environment
PORT = int(os.environ.get("MOCK_FHIR_PORT", 3901))
BASE_URL = f"http://localhost:{PORT}{FHIR_BASE}"

failures = 0


def start_server():
    env = os.environ.copy()
    env["PYTHONPATH"] = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    env["MOCK_FHIR_PORT"] = str(PORT)
    proc = subprocess.Popen([sys.executable, "-m", "fhir_offline.mock_server"], env=env)
    # Wait for the server to come up or fail
    for _ in range(20):  # wait up to ~10s
        try:
            if requests.get(f"{BASE_URL}/metadata", timeout=0.5).status_code == 200:
                return proc
        except requests.exceptions.RequestException:
            pass
        if proc.poll() is not None:
            break
        time.sleep(0.5)
    stop_server(proc)
    print(f"\nERROR: Mock FHIR server did not start on port {PORT}.\n", file=sys.stderr)
    sys.exit(2)


def stop_server(proc):
    if proc.poll() is None:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()


def check(name, ok, detail=""):
    global failures
    if ok:
        print(f"  PASS: {name}")
    else:
        print("\033[91m**FAIL**\033[0m")
        print(f"  FAIL: {name} {detail}")
        failures += 1


async def run_online_checks(client):
    print("Online checks...")
    check("check_connection", await client.check_connection())

    patients = await client.search_patients()
    check("patient search scoped to org-1", {p.id for p in patients.resources} == {"patient-1", "patient-2"})

    created = await client.create_patient({"resourceType": "Patient", "name": [{"family": "E2E"}]})
    check("managingOrganization injected", created.managingOrganization.reference == "Organization/org-1")

    resources = await client.get_encounter_resources("encounter-1")
    check("encounter resources", len(resources.observations.resources) == 2)

    try:
        await client.get_patient("doesnotexist12345")
        check("missing patient raises", False, "got success")
    except OperationOutcomeError as e:
        check("missing patient raises", e.status == 404, str(e))


async def run_offline_checks(client, proc):
    print("Offline checks...")
    resilient = OfflineResilientClient(client)
    stop_server(proc)

    queued = await resilient.create_patient({"resourceType": "Patient", "name": [{"family": "Queued"}]})
    check("write queued while server is down", isinstance(queued, QueuedOperation) and resilient.is_offline)

    proc = start_server()
    reconnected = await resilient.retry_connection()
    check("retry_connection reconnects", reconnected and resilient.queue_size == 0)

    found = await resilient.search_patients({"name": "queued"})
    check("replayed patient exists", len(found.resources) == 1)
    return proc


def print_separator():
    print("\n" + "-" * 60 + "\n")


async def main():
    client = ResourceClient(ClientConfig(base_url=BASE_URL, organization_id="org-1", timeout_ms=2000, retry_delay_ms=250))
    proc = start_server()
    try:
        await run_online_checks(client)
        print_separator()
        proc = await run_offline_checks(client, proc)
        print_separator()
    finally:
        stop_server(proc)


if __name__ == "__main__":
    asyncio.run(main())
    if failures:
        print(f"\n{failures} check(s) failed.")
        sys.exit(1)
    print("\nAll E2E checks passed!")
    sys.exit(0)
