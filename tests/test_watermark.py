import base64
from datetime import datetime, UTC

from securenotes.watermark import TILE_HEIGHT, TILE_WIDTH, compose_watermark, watermark_timestamp


def test_timestamp_format():
    assert watermark_timestamp(datetime(2024, 1, 2, 3, 4, tzinfo=UTC)) == "2024-01-02 03:04 UTC"


def test_tile_contains_label_and_timestamp():
    mark = compose_watermark("student@example.edu", "2024-01-02 03:04 UTC")
    assert "student@example.edu" in mark.svg
    assert "2024-01-02 03:04 UTC" in mark.svg
    assert f'width="{TILE_WIDTH}"' in mark.svg
    assert f'height="{TILE_HEIGHT}"' in mark.svg
    assert "rotate(" in mark.svg


def test_label_is_escaped():
    mark = compose_watermark("<b>&evil", "now")
    assert "<b>" not in mark.svg
    assert "&lt;b&gt;&amp;evil" in mark.svg


def test_blank_label_falls_back():
    assert compose_watermark("   ", "now").label == "your account"


def test_data_uri_round_trips_svg():
    mark = compose_watermark("someone", "now")
    prefix = "data:image/svg+xml;base64,"
    assert mark.data_uri.startswith(prefix)
    assert base64.b64decode(mark.data_uri[len(prefix):]).decode("utf-8") == mark.svg


def test_overlay_never_takes_input():
    style = compose_watermark("someone", "now").overlay_style()
    assert style["pointer-events"] == "none"
    assert style["user-select"] == "none"
    assert style["background-repeat"] == "repeat"


def test_to_dict():
    data = compose_watermark("someone", "now").to_dict()
    assert data["label"] == "someone"
    assert data["timestamp"] == "now"
    assert data["image"].startswith("data:image/svg+xml")
    assert data["style"]["pointer-events"] == "none"
