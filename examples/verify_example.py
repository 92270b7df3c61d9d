#!/usr/bin/env python3
"""
Verify a stored intent once and print what the verifier sees.

Reads the same environment variables as the service (PAYINTENT_DB_URL,
EVM_RPC_URL, ...). Useful for checking why an intent is still PENDING.
"""
import argparse
import json
import logging
import sys

from payintent import IntentNotFoundError, PaymentIntentService, VerifierSettings
from payintent.chain.adapter import compute_scan_range


def main():
    """Run the example."""
    parser = argparse.ArgumentParser(description="Verify a stored payment intent.")
    parser.add_argument("intent_id", help="Intent id to verify")
    parser.add_argument("--debug", help="Enable debug output", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    service = PaymentIntentService.from_settings(VerifierSettings.from_env())
    try:
        view = service.get_intent(args.intent_id)
        latest = service.adapter.client.latest_block()
        from_block, to_block = compute_scan_range(latest, service.adapter.scan_blocks)
        print(f"Intent {args.intent_id}: {view.status.value}")
        print(f"Scanning blocks {from_block}..{to_block}")

        result = service.trigger_verify(args.intent_id)
        print(json.dumps(result.model_dump(by_alias=True, mode="json"), indent=2))

        events = service.store.list_events(args.intent_id)
        for event in events:
            print(f"{event.created_at.isoformat()} {event.type} {json.dumps(event.payload)}")
    except IntentNotFoundError as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        service.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
