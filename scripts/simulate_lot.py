"""
Simple simulator: run one compost lot through its whole lifecycle.
Run:
    python scripts/simulate_lot.py [API_URL]
"""
import sys
import random
import requests

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
UNIT = "CWB001"
VOLUNTEERS = ["vol-ana", "vol-bruno", "vol-carla", "vol-diego"]


def main():
    code = f"{UNIT}-{random.randint(1000, 9999)}"
    r = requests.post(f"{API}/api/lots", json={
        "code": code,
        "unit": UNIT,
        "initial_weight_kg": 0,
        "created_by": "operator-01",
        "latitude": -25.4284,
        "longitude": -49.2733,
    })
    print("lot:", r.status_code, r.text)

    for v in VOLUNTEERS:
        rr = requests.post(f"{API}/api/lots/{code}/deliveries", json={
            "volunteer_id": v,
            "weight_kg": round(random.uniform(2, 8), 2),
        })
        print("delivery", v, rr.status_code, rr.text)

    rr = requests.post(f"{API}/api/lots/{code}/photos", json={"url": f"https://photos.example.org/{code}/start.jpg"})
    print("photo:", rr.status_code, rr.text)

    weight = requests.get(f"{API}/api/lots/{code}").json()["current_weight_kg"]
    for week in range(1, 8):
        after = round(weight * random.uniform(0.88, 0.97), 2)
        rr = requests.post(f"{API}/api/lots/{code}/checkpoints", json={
            "week": week,
            "weight_before_kg": weight,
            "weight_after_kg": after,
        })
        print("week", week, rr.status_code)
        weight = after

    rr = requests.post(f"{API}/api/lots/{code}/finalize", json={"final_weight_kg": weight})
    print("finalize:", rr.status_code, rr.text)

    rr = requests.get(f"{API}/api/chain/validate", params={"unit": UNIT})
    print("validate:", rr.status_code, rr.text)


if __name__ == "__main__":
    main()
