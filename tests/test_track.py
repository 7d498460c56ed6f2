"""Tests for the anonymous endpoints: render decisions and conversion tracking."""
import pytest
from split_service.config import Settings
from split_service.models import ARMS, ARM_CONTROL, ARM_VARIANT, VisitorConversion
from split_service.services.rendering_service import tracking_token
from split_service.services.tracking_service import get_total_impressions
from split_service.utils.assignment import VISITOR_ID_COOKIE, arm_cookie_name, new_visitor_id


def _render(client, node_id):
    response = client.get(f"/render/{node_id}")
    assert response.status_code == 200
    return response.json()


def _convert(client, **fields):
    response = client.post("/track/convert", json=fields)
    assert response.status_code == 200
    return response.json()


def _token(client, ctx):
    """Token the tracker was handed for the current visitor cookie"""
    return tracking_token(ctx.settings.secret_key, "pricing-page", client.cookies.get(VISITOR_ID_COOKIE))


def test_render_direct_test(client, sample_experiment):
    data = _render(client, 10)

    assert data["experiment_handle"] == "pricing-page"
    assert data["variant"] in ARMS
    assert data["cascaded"] is False
    if data["variant"] == ARM_VARIANT:
        assert data["render_node_id"] == 20
        # variant root borrows the control node's children
        assert data["children_ids"] == [11, 12]
    else:
        assert data["render_node_id"] == 10
        assert data["children_ids"] == [11, 12]
    assert client.cookies.get(VISITOR_ID_COOKIE)
    assert client.cookies.get(arm_cookie_name("pricing-page")) == data["variant"]


def test_render_is_sticky(client, sample_experiment):
    first = _render(client, 10)
    for _ in range(3):
        assert _render(client, 10)["variant"] == first["variant"]


def test_render_cascaded_descendant(client, sample_experiment):
    data = _render(client, 13)

    assert data["cascaded"] is True
    assert data["render_node_id"] == 13
    expected_parent = 20 if data["variant"] == ARM_VARIANT else 11
    assert data["parent_id"] == expected_parent


def test_render_variant_arm_from_cookie(client, sample_experiment):
    client.cookies.set(arm_cookie_name("pricing-page"), ARM_VARIANT)

    data = _render(client, 12)

    assert data["variant"] == ARM_VARIANT
    assert data["parent_id"] == 20


def test_render_without_experiment(client, tree):
    data = _render(client, 12)

    assert data["experiment_handle"] is None
    assert data["tracking"] is None
    assert data["parent_id"] == 10


def test_render_unknown_node(client, tree):
    assert client.get("/render/999").status_code == 404


def test_render_records_impression(client, ctx, db, sample_experiment):
    data = _render(client, 10)
    _render(client, 11)

    assert get_total_impressions(db, sample_experiment.id)[data["variant"]] == 2


def test_tracking_payload(client, ctx, sample_experiment):
    data = _render(client, 10)
    tracking = data["tracking"]
    visitor_id = client.cookies.get(VISITOR_ID_COOKIE)

    assert tracking["test_handle"] == "pricing-page"
    assert tracking["variant"] == data["variant"]
    assert tracking["endpoint"] == "/track/convert"
    assert tracking["goals"][0]["type"] == "form"
    assert tracking["token"] == tracking_token(ctx.settings.secret_key, "pricing-page", visitor_id)


def test_convert_after_render(client, db, sample_experiment):
    data = _render(client, 10)
    token = data["tracking"]["token"]

    result = _convert(client, testHandle="pricing-page", conversionType="form", token=token)

    assert result == {"success": True}
    stored = db.query(VisitorConversion).one()
    assert stored.arm == data["variant"]


def test_convert_with_goal_id(client, ctx, sample_experiment):
    _render(client, 10)
    goal_id = sample_experiment.goals[0].id

    result = _convert(
        client, testHandle="pricing-page", conversionType="form", goalId=str(goal_id), token=_token(client, ctx)
    )
    assert result == {"success": True}


@pytest.mark.parametrize("fields, error", [
    ({}, "Missing parameters"),
    ({"testHandle": "pricing-page"}, "Missing parameters"),
    ({"testHandle": "Pricing_Page", "conversionType": "form"}, "Invalid test handle format"),
    ({"testHandle": "pricing-page", "conversionType": "hover"}, "Invalid conversion type"),
    ({"testHandle": "pricing-page", "conversionType": "form", "goalId": "abc"}, "Invalid goal ID"),
    ({"testHandle": "pricing-page", "conversionType": "form", "goalId": 0}, "Invalid goal ID"),
    ({"testHandle": "pricing-page", "conversionType": "form", "goalId": -3}, "Invalid goal ID"),
])
def test_convert_soft_failures(client, sample_experiment, fields, error):
    assert _convert(client, **fields) == {"success": False, "error": error}


def test_convert_unknown_goal(client, ctx, sample_experiment):
    _render(client, 10)
    result = _convert(client, testHandle="pricing-page", conversionType="form", goalId=999, token=_token(client, ctx))
    assert result == {"success": False, "error": "Goal not found"}


def test_convert_bad_token(client, sample_experiment):
    _render(client, 10)
    result = _convert(client, testHandle="pricing-page", conversionType="form", token="forged")
    assert result == {"success": False, "error": "Invalid token"}


def test_convert_missing_token(client, db, sample_experiment):
    _render(client, 10)

    result = _convert(client, testHandle="pricing-page", conversionType="form")

    assert result == {"success": False, "error": "Invalid token"}
    assert db.query(VisitorConversion).count() == 0


def test_convert_unassigned_visitor(client, ctx, sample_experiment):
    client.cookies.set(VISITOR_ID_COOKIE, new_visitor_id())
    result = _convert(client, testHandle="pricing-page", conversionType="form", token=_token(client, ctx))
    assert result == {"success": False}


def test_convert_rate_limited(client, ctx, sample_experiment):
    ctx.settings = Settings(conversion_rate_limit=3)
    _render(client, 10)

    token = _token(client, ctx)
    results = [_convert(client, testHandle="pricing-page", conversionType="form", token=token) for _ in range(4)]

    assert [r["success"] for r in results] == [True, True, True, False]
    assert results[-1]["error"] == "Rate limited"


def test_rate_limit_keyed_on_cloudflare_ip(client, ctx, sample_experiment):
    ctx.settings = Settings(conversion_rate_limit=1)
    _render(client, 10)
    token = _token(client, ctx)

    first = client.post(
        "/track/convert",
        json={"testHandle": "pricing-page", "conversionType": "form", "token": token},
        headers={"CF-Connecting-IP": "198.51.100.1"},
    ).json()
    other_ip = client.post(
        "/track/convert",
        json={"testHandle": "pricing-page", "conversionType": "phone", "token": token},
        headers={"CF-Connecting-IP": "198.51.100.2"},
    ).json()
    same_ip = client.post(
        "/track/convert",
        json={"testHandle": "pricing-page", "conversionType": "email", "token": token},
        headers={"CF-Connecting-IP": "198.51.100.1"},
    ).json()

    assert first == {"success": True}
    assert other_ip == {"success": True}
    assert same_ip == {"success": False, "error": "Rate limited"}


def test_control_arm_cookie_is_trusted_for_rendering(client, sample_experiment):
    client.cookies.set(arm_cookie_name("pricing-page"), ARM_CONTROL)
    assert _render(client, 10)["render_node_id"] == 10
