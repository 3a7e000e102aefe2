from datetime import datetime, timezone


def create_challenge(client, headers, **overrides):
    body = {
        "title": "Evening walk",
        "type": "elimination",
        "due_time_local": "21:00",
        "timezone_mode": "groupLocal",
        "timezone": "America/New_York",
        "strikes_allowed": 0,
    }
    body.update(overrides)
    response = client.post("/challenges", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_requires_a_bearer_token(client):
    assert client.get("/challenges/1/period").status_code == 401
    assert client.get("/challenges/1/period", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_create_validates_due_time_and_zone(client, auth_headers):
    headers = auth_headers("alice")
    bad_time = client.post("/challenges", json={"title": "x", "due_time_local": "25:00"}, headers=headers)
    assert bad_time.status_code == 400
    bad_zone = client.post("/challenges", json={"title": "x", "timezone": "Mars/Base"}, headers=headers)
    assert bad_zone.status_code == 400
    no_deadline = client.post("/challenges", json={"title": "x", "type": "deadline"}, headers=headers)
    assert no_deadline.status_code == 400


def test_check_in_flow_until_a_winner(client, clock, auth_headers):
    alice, bob = auth_headers("alice"), auth_headers("bob")
    challenge = create_challenge(client, alice)
    challenge_id = challenge["challenge_id"]
    assert client.post(f"/challenges/{challenge_id}/join", headers=bob).status_code == 200

    period = client.get(f"/challenges/{challenge_id}/period", headers=alice).json()
    assert period["period_key"] == "2025-06-10"
    assert period["admin_timezone"] == "America/New_York"
    assert period["due_label"] == "9:00 PM"
    assert period["due_at_utc"].startswith("2025-06-11T01:00:00")
    assert period["remaining_label"] == "13h 0m"

    response = client.post(f"/challenges/{challenge_id}/check-ins", json={}, headers=alice)
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["check_in"]["day_key"] == "2025-06-10"
    assert body["member"]["status"] == "completed"

    members = client.get(f"/challenges/{challenge_id}/members", headers=alice).json()
    assert {m["user_id"]: m["status"] for m in members} == {"alice": "completed", "bob": "pending"}

    # Bob comes back after the due time; the sweep runs first and eliminates him
    clock.now = datetime(2025, 6, 11, 1, 30, tzinfo=timezone.utc)
    late = client.post(f"/challenges/{challenge_id}/check-ins", json={}, headers=bob)
    assert late.status_code == 403

    challenge = client.get(f"/challenges/{challenge_id}", headers=alice).json()
    assert challenge["state"] == "ended"
    assert challenge["winner_id"] == "alice"

    status = client.get(f"/challenges/{challenge_id}/status", headers=bob).json()
    assert status["status"] == "eliminated"
    assert status["strikes"] == 1


def test_sweep_endpoint(client, clock, auth_headers):
    alice = auth_headers("alice")
    challenge = create_challenge(client, alice, strikes_allowed=3)
    challenge_id = challenge["challenge_id"]

    assert client.post(f"/challenges/{challenge_id}/sweep", headers=alice).json()["status"] == "nothing_due"

    clock.now = datetime(2025, 6, 12, 2, 0, tzinfo=timezone.utc)
    result = client.post(f"/challenges/{challenge_id}/sweep", headers=alice).json()
    assert result["status"] == "evaluated"
    assert result["closed_periods"] == ["2025-06-10", "2025-06-11"]

    again = client.post(f"/challenges/{challenge_id}/sweep", headers=alice).json()
    assert again["status"] == "nothing_due"

    assert client.post("/challenges/999/sweep", headers=alice).status_code == 404


def test_status_lookups(client, auth_headers):
    alice = auth_headers("alice")
    challenge_id = create_challenge(client, alice)["challenge_id"]

    assert client.get(f"/challenges/{challenge_id}/status", headers=auth_headers("zed")).status_code == 404
    assert client.get("/challenges/999/status", headers=alice).status_code == 404
    assert client.get(f"/challenges/{challenge_id}/status?period_key=June", headers=alice).status_code == 400

    status = client.get(f"/challenges/{challenge_id}/status?viewer_zone=Europe/London", headers=alice).json()
    assert status["due_label"] == "2:00 AM"
    assert status["remaining_label"] == "13h 0m"


def test_weekly_check_ins_count_towards_the_week(client, clock, auth_headers):
    alice = auth_headers("alice")
    challenge_id = create_challenge(
        client, alice,
        cadence_unit="weekly", required_count=2, week_starts_on=1,
        timezone_mode="fixedZone", timezone="UTC", due_time_local="23:59",
    )["challenge_id"]

    first = client.post(f"/challenges/{challenge_id}/check-ins", json={}, headers=alice).json()
    assert first["check_in"]["week_key"] == "2025-06-09"
    assert first["member"]["status"] == "pending"

    clock.now = datetime(2025, 6, 12, 9, 0, tzinfo=timezone.utc)
    second = client.post(f"/challenges/{challenge_id}/check-ins", json={}, headers=alice).json()
    assert second["member"]["completed_count"] == 2
    assert second["member"]["status"] == "completed"


def test_register_device(client, auth_headers):
    headers = auth_headers("alice")
    first = client.post("/devices", json={"fcm_token": "token-1", "os_name": "ios"}, headers=headers).json()
    second = client.post("/devices", json={"fcm_token": "token-1"}, headers=headers).json()
    assert first["device_id"] == second["device_id"]
    assert first["user_id"] == "alice"
    assert client.delete("/devices/token-1", headers=headers).status_code == 200


def test_period_of_a_deadline_challenge_counts_down_to_the_deadline(client, clock, auth_headers):
    alice = auth_headers("alice")
    clock.now = datetime(2025, 5, 30, 12, 0, tzinfo=timezone.utc)
    challenge_id = create_challenge(
        client, alice,
        type="deadline", deadline_date="2025-06-01",
        timezone_mode="fixedZone", timezone="UTC", due_time_local="23:59",
    )["challenge_id"]

    period = client.get(f"/challenges/{challenge_id}/period", headers=alice).json()
    assert period["period_key"] == "2025-05-30"
    assert period["deadline_at_utc"].startswith("2025-06-01T23:59:00")
    assert period["remaining_label"] == "59h 59m"

    daily_id = create_challenge(client, alice)["challenge_id"]
    daily = client.get(f"/challenges/{daily_id}/period", headers=alice).json()
    assert daily["deadline_at_utc"] is None
    assert daily["remaining_label"] == "13h 0m"


def test_check_in_after_the_week_closed_is_rejected(client, clock, auth_headers):
    alice = auth_headers("alice")
    challenge_id = create_challenge(
        client, alice,
        cadence_unit="weekly", week_starts_on=1, strikes_allowed=3,
        timezone_mode="fixedZone", timezone="UTC", due_time_local="21:00",
    )["challenge_id"]

    clock.now = datetime(2025, 6, 15, 22, 0, tzinfo=timezone.utc)
    late = client.post(f"/challenges/{challenge_id}/check-ins", json={}, headers=alice)
    assert late.status_code == 403
    assert late.json()["detail"] == "This period has already closed"

    clock.now = datetime(2025, 6, 16, 0, 5, tzinfo=timezone.utc)
    next_week = client.post(f"/challenges/{challenge_id}/check-ins", json={}, headers=alice)
    assert next_week.status_code == 200, next_week.text
    assert next_week.json()["check_in"]["week_key"] == "2025-06-16"
