"""
Quick smoke test against a running service
"""

import asyncio
import sys

import httpx

SAMPLE_LISTING = {
    "subject_id": "listing-smoke-1",
    "title": "Bright 2-bedroom apartment near Riverside Park",
    "description": (
        "Renovated apartment on the fourth floor with 2 bedrooms, an open kitchen and a balcony "
        "facing the park. 85 m2 of living space, elevator, storage room in the basement."
    ),
    "price": 450000,
    "currency": "USD",
    "listing_type": "sale",
    "property_type": "apartment",
    "bedrooms": 2,
    "area_sqm": 85,
    "address": "12 Elm Street",
    "city": "Springfield",
}


async def smoke_test(base_url: str):
    """Hit every endpoint once and print the responses"""

    print(f"Testing EstateVerify API at {base_url}...")
    print("=" * 50)

    async with httpx.AsyncClient(timeout=60.0) as client:
        print("\n1. Health check...")
        response = await client.get(f"{base_url}/health")
        print(f"Status: {response.status_code}")
        print(f"Response: {response.json()}")

        print("\n2. Verify listing...")
        response = await client.post(f"{base_url}/verify/listing", json=SAMPLE_LISTING)
        print(f"Status: {response.status_code}")
        data = response.json()
        print(f"Decision: {data.get('decision')} (score {data.get('combined_score')}, degraded={data.get('degraded')})")
        for name, value in data.items():
            if isinstance(value, dict) and "status" in value:
                print(f"  {name:<20} {value['status']:<6} {value['confidence_score']:.3f}")

        print("\n3. Invalid request...")
        response = await client.post(f"{base_url}/verify/listing", json={"subject_id": "broken"})
        print(f"Status: {response.status_code}")
        print(f"Response: {response.json()}")

        print("\n4. Metrics...")
        response = await client.get(f"{base_url}/metrics")
        print(f"Status: {response.status_code}")
        print(f"Response: {response.json()}")

    print("\n" + "=" * 50)
    print("Smoke test completed")


if __name__ == "__main__":
    asyncio.run(smoke_test(sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8001"))
