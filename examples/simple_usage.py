#!/usr/bin/env python3
"""
Simple example of using the payintent verifier.
"""
import json
import logging
import os
from datetime import datetime, timedelta, timezone

from payintent import PaymentIntentService, VerifierSettings, to_base_units


def main():
    """
    Demonstrate basic usage of the PaymentIntentService.

    This example shows how to:
    1. Build the service from environment variables
    2. Create a payment intent and print its payment request
    3. Verify it once against the chain
    """
    logging.basicConfig(level=logging.INFO)

    recipient = os.environ.get("PAYINTENT_RECIPIENT")
    if not recipient:
        print("ERROR: PAYINTENT_RECIPIENT environment variable is required")
        return

    settings = VerifierSettings.from_env()
    service = PaymentIntentService.from_settings(settings)

    try:
        health = service.health()
        print(f"Health: {health.model_dump_json(by_alias=True)}")

        created = service.create_intent({
            "chainId": settings.chain_id,
            "asset": {"symbol": "ETH", "decimals": 18, "type": "native"},
            "recipient": recipient,
            "amount": to_base_units("0.001", 18),
            "reference": f"example-{datetime.now(timezone.utc):%Y%m%d%H%M%S}",
            "expiresAt": (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat(),
        })
        print(json.dumps(created.model_dump(by_alias=True, mode="json"), indent=2))

        result = service.trigger_verify(created.intent.id)
        print(f"Verification: {result.model_dump_json(by_alias=True)}")
    except Exception as e:
        print(f"Error: {str(e)}")
    finally:
        service.close()


if __name__ == "__main__":
    main()
