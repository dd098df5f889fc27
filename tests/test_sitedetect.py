import json

from slotkeeper.sitedetect import detect_output_dir, detect_site, detect_site_type, detect_spa


def test_package_with_build_script_is_static(tmp_path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"build": "vite build", "start": "vite"}}), encoding="utf-8"
    )
    (tmp_path / "dist").mkdir()
    (tmp_path / "dist" / "index.html").write_text("app", encoding="utf-8")

    assert detect_site(tmp_path) == {
        "type": "static",
        "outputDir": str(tmp_path / "dist"),
        "spa": True,
    }


def test_package_without_build_script_is_nodejs(tmp_path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"start": "node server.js"}}), encoding="utf-8"
    )
    (tmp_path / "public").mkdir()

    assert detect_site_type(tmp_path) == "nodejs"


def test_unreadable_package_json_is_nodejs(tmp_path, caplog) -> None:
    (tmp_path / "package.json").write_text("{", encoding="utf-8")

    assert detect_site_type(tmp_path) == "nodejs"
    assert "Unreadable package.json" in caplog.text


def test_plain_html_checkout_serves_from_root(tmp_path) -> None:
    (tmp_path / "index.html").write_text("hi", encoding="utf-8")
    (tmp_path / "404.html").write_text("missing", encoding="utf-8")

    assert detect_site_type(tmp_path) == "static"
    assert detect_output_dir(tmp_path) == tmp_path
    assert detect_spa(tmp_path) is False


def test_output_dir_order_and_empty_checkout(tmp_path) -> None:
    (tmp_path / "build").mkdir()
    (tmp_path / "out").mkdir()

    assert detect_output_dir(tmp_path) == tmp_path / "build"
    assert detect_site_type(tmp_path) == "static"

    bare = tmp_path / "bare"
    bare.mkdir()
    assert detect_site(bare) == {"type": "nodejs", "outputDir": "", "spa": True}
