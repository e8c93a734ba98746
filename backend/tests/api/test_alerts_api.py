import pytest

from locus.domain.proximity.models import ProfileSnapshot

OWNER = {"X-User-Id": "owner-1"}
STRANGER = {"X-User-Id": "stranger-1"}
ADMIN = {"X-User-Id": "ops-1", "X-User-Roles": "admin"}
BODY = {"lat": 40.7128, "lng": -74.006}


@pytest.fixture()
def premium_owner(wiring):
	wiring.entitlements.grant("owner-1")
	return wiring


@pytest.mark.asyncio
async def test_create_alert_applies_defaults(api_client, premium_owner):
	response = await api_client.post("/proximity-alerts", json={**BODY, "name": "Gym"}, headers=OWNER)
	assert response.status_code == 201
	body = response.json()
	assert body["name"] == "Gym"
	assert body["radius_m"] == 1000
	assert body["cooldown_minutes"] == 60
	assert body["max_triggers_per_day"] == 10
	assert body["triggers_today"] == 0
	assert body["is_active"] is True


@pytest.mark.asyncio
async def test_create_alert_requires_premium(api_client):
	response = await api_client.post("/proximity-alerts", json=BODY, headers=STRANGER)
	assert response.status_code == 403
	assert response.json()["detail"] == "premium_required"


@pytest.mark.asyncio
async def test_sixth_alert_conflicts(api_client, premium_owner):
	for _ in range(5):
		assert (await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)).status_code == 201
	response = await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)
	assert response.status_code == 409
	assert response.json()["detail"] == "alert_limit_reached"
	listed = await api_client.get("/proximity-alerts", headers=OWNER)
	assert len(listed.json()) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize(
	"override",
	[
		{"radius_m": 50},
		{"radius_m": 6000},
		{"min_age": 17},
		{"min_age": 40, "max_age": 30},
		{"interests": ["a", "b", "c", "d", "e", "f"]},
		{"cooldown_minutes": 10},
		{"max_triggers_per_day": 51},
		{"min_trust_score": 101},
		{"name": ""},
	],
)
async def test_create_alert_validates_bounds(api_client, premium_owner, override):
	response = await api_client.post("/proximity-alerts", json={**BODY, **override}, headers=OWNER)
	assert response.status_code == 422
	assert response.json()["detail"] == "validation_error"


@pytest.mark.asyncio
async def test_update_and_delete_are_owner_only(api_client, premium_owner):
	alert_id = (await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)).json()["id"]

	hijack = await api_client.put(f"/proximity-alerts/{alert_id}", json={"name": "mine"}, headers=STRANGER)
	assert hijack.status_code == 404
	assert (await api_client.delete(f"/proximity-alerts/{alert_id}", headers=STRANGER)).status_code == 404
	assert (await api_client.get(f"/proximity-alerts/{alert_id}/matches", headers=STRANGER)).status_code == 404

	updated = await api_client.put(
		f"/proximity-alerts/{alert_id}", json={"radius_m": 250, "is_active": False}, headers=OWNER
	)
	assert updated.status_code == 200
	assert updated.json()["radius_m"] == 250
	assert updated.json()["is_active"] is False

	deleted = await api_client.delete(f"/proximity-alerts/{alert_id}", headers=OWNER)
	assert deleted.json() == {"ok": True}
	assert (await api_client.get("/proximity-alerts", headers=OWNER)).json() == []


@pytest.mark.asyncio
async def test_list_alerts_only_returns_callers_alerts(api_client, premium_owner):
	premium_owner.entitlements.grant("stranger-1")
	await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)
	await api_client.post("/proximity-alerts", json=BODY, headers=STRANGER)
	mine = await api_client.get("/proximity-alerts", headers=OWNER)
	assert len(mine.json()) == 1


@pytest.mark.asyncio
async def test_matches_are_listed_for_owner(api_client, premium_owner):
	alert_id = (await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)).json()["id"]
	await api_client.post("/location", json={"lat": 40.713, "lng": -74.006}, headers={"X-User-Id": "walker"})
	response = await api_client.get(f"/proximity-alerts/{alert_id}/matches", headers=OWNER)
	assert response.status_code == 200
	[match] = response.json()
	assert match["matched_user_id"] == "walker"
	assert 0 <= match["distance_m"] <= 50
	assert match["display_name"] is None


@pytest.mark.asyncio
async def test_matches_carry_matched_user_profile(api_client, premium_owner):
	premium_owner.profiles.upsert(ProfileSnapshot(user_id="walker", display_name="Wren", trust_score=72))
	alert_id = (await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)).json()["id"]
	await api_client.post("/location", json={"lat": 40.713, "lng": -74.006}, headers={"X-User-Id": "walker"})
	[match] = (await api_client.get(f"/proximity-alerts/{alert_id}/matches", headers=OWNER)).json()
	assert match["display_name"] == "Wren"
	assert match["trust_score"] == 72


@pytest.mark.asyncio
async def test_daily_reset_requires_admin(api_client, premium_owner):
	alert_id = (await api_client.post("/proximity-alerts", json=BODY, headers=OWNER)).json()["id"]
	await api_client.post("/location", json={"lat": 40.713, "lng": -74.006}, headers={"X-User-Id": "walker"})

	forbidden = await api_client.post("/internal/proximity-alerts/reset-daily", headers=OWNER)
	assert forbidden.status_code == 403

	response = await api_client.post("/internal/proximity-alerts/reset-daily", headers=ADMIN)
	assert response.status_code == 200
	assert response.json() == {"reset": 1}
	[alert] = (await api_client.get("/proximity-alerts", headers=OWNER)).json()
	assert alert["id"] == alert_id
	assert alert["triggers_today"] == 0
