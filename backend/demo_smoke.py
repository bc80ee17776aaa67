import json

from fastapi.testclient import TestClient

import main


def run_demo() -> None:
    with TestClient(main.app) as client:
        run_flow(client)


def run_flow(client: TestClient) -> None:
    create_resp = client.post(
        "/rooms/create",
        json={"display_name": "Alice", "room_name": "Smoke Demo", "currency": "INR"},
    )
    create_resp.raise_for_status()
    created = create_resp.json()
    room_id = created["room_id"]
    alice_id = created["user_id"]

    join_resp = client.post("/rooms/join", json={"code": created["code"].lower(), "display_name": "Bob"})
    join_resp.raise_for_status()
    bob_id = join_resp.json()["user_id"]

    gst = client.post(
        f"/rooms/{room_id}/tax-profiles",
        json={"actor_user_id": alice_id, "name": "GST", "rate": 2.5, "is_global": True, "is_double": True},
    )
    gst.raise_for_status()
    client.post(f"/rooms/{room_id}/service-tax", json={"actor_user_id": alice_id, "rate": 10}).raise_for_status()

    items = [
        {"name": "Paneer Tikka", "price": 320, "quantity": 1},
        {"name": "Butter Naan", "price": 60, "quantity": 4},
        {"name": "Sweet Lassi", "price": 90, "quantity": 2},
    ]
    item_ids = []
    for item in items:
        resp = client.post(f"/rooms/{room_id}/items", json={"actor_user_id": alice_id, **item})
        resp.raise_for_status()
        item_ids.append(resp.json()["item"]["id"])

    client.post(f"/rooms/{room_id}/items/{item_ids[0]}/toggle", json={"user_id": alice_id}).raise_for_status()
    client.post(f"/rooms/{room_id}/items/{item_ids[1]}/toggle", json={"user_id": alice_id}).raise_for_status()
    client.post(f"/rooms/{room_id}/items/{item_ids[1]}/toggle", json={"user_id": bob_id}).raise_for_status()

    summary_resp = client.get(f"/rooms/{room_id}/summary?format=compact&locale=en-IN")
    summary_resp.raise_for_status()
    summary = summary_resp.json()

    print("=== Smoke Demo OK ===")
    print("Room ID:", room_id, "Code:", created["code"])
    print("Compact summary:")
    print(json.dumps(summary, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    run_demo()
