from __future__ import annotations

import json
import zipfile

import numpy as np
import pytest
from PIL import Image

from adc2tools.symbol_extract import main

from conftest import descriptor_bytes, half_mask_sheet, terrain_sheet

TERRAIN = [("Clear", 0, [(0, 0, 4, 4)]), ("Woods", 1, [(4, 0, 4, 4)])]
PIECES = [("Tank", 1, [(0, 0, 4, 4)]), ("Tank", 0, [(4, 0, 4, 4)]), ("Inf", 0, [(8, 0, 2, 4)])]
MASKS = [("Half", 0, [(0, 0, 4, 4)])]


def _make_set(folder, level=3):
    (folder / "Demo.set").write_bytes(descriptor_bytes(terrain=TERRAIN, pieces=PIECES, masks=MASKS))
    terrain_sheet().save(folder / f"Demo-t{level}.bmp", format="BMP")
    terrain_sheet().save(folder / f"Demo-u{level}.bmp", format="BMP")
    half_mask_sheet().save(folder / f"Demo-m{level}.bmp", format="BMP")
    return folder / "Demo.set"


def test_info(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    report_path = tmp_path / "report.json"
    assert main(["info", "--set", str(set_path), "--symbols", "--json", str(report_path)]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["shape"] == "square"
    assert report["counts"] == {"terrain": 2, "pieces": 3, "masks": 1}
    assert report["zoom_level"] == 3
    assert report["symbol_size"] == 4
    assert report["zoom_factors"] == [1.0, 1.0, 1.0]
    assert report["modal_size"] == [4, 4]
    assert report["symbols"]["pieces"][0]["mask"] == 1
    assert report["symbols"]["pieces"][2]["rect"] == [8, 0, 2, 4]
    assert json.loads(report_path.read_text(encoding="utf-8")) == report


def test_export_to_folder(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    out = tmp_path / "images"
    manifest = tmp_path / "manifest.json"
    assert main(["export", "--set", str(set_path), "--outdir", str(out), "--manifest", str(manifest)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["exported"] == 3
    assert sorted(p.name for p in out.iterdir()) == ["Inf.png", "Tank(1).png", "Tank.png"]
    with Image.open(out / "Tank.png") as img:
        alpha = np.asarray(img.convert("RGBA"))[..., 3]
    assert (alpha[:, 2:] == 0).all()
    pieces = json.loads(manifest.read_text(encoding="utf-8"))["pieces"]
    assert [p["file"] for p in pieces] == ["Tank.png", "Tank(1).png", "Inf.png"]


def test_export_does_not_overwrite_existing_files(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    out = tmp_path / "images"
    out.mkdir()
    (out / "Inf.png").write_bytes(b"keep")
    assert main(["export", "--set", str(set_path), "--outdir", str(out)]) == 0
    assert (out / "Inf.png").read_bytes() == b"keep"
    assert (out / "Inf(1).png").exists()


def test_export_all_to_zip_with_config(tmp_path, capsys):
    set_path = _make_set(tmp_path, level=1)
    config = tmp_path / "cfg.yaml"
    config.write_text("zoom_level: 1\ncategories: [all]\n", encoding="utf-8")
    archive = tmp_path / "module.zip"
    assert main(["export", "--set", str(set_path), "--zip", str(archive), "--config", str(config)]) == 0
    with zipfile.ZipFile(archive) as zf:
        names = sorted(zf.namelist())
    assert names == sorted(
        ["images/Clear.png", "images/Woods.png", "images/Tank.png", "images/Tank(1).png", "images/Inf.png", "images/Half.png"]
    )


def test_export_category_flag_overrides_config(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    config = tmp_path / "cfg.json"
    config.write_text(json.dumps({"categories": "all"}), encoding="utf-8")
    out = tmp_path / "images"
    assert main(["export", "--set", str(set_path), "--outdir", str(out), "--config", str(config), "--category", "terrain"]) == 0
    assert sorted(p.name for p in out.iterdir()) == ["Clear.png", "Woods.png"]


def test_missing_sheet_reports_error(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    (tmp_path / "Demo-u3.bmp").unlink()
    assert main(["info", "--set", str(set_path)]) == 2
    assert "Missing bitmap file" in capsys.readouterr().err


def test_unsupported_header_reports_error(tmp_path, capsys):
    (tmp_path / "Old.set").write_bytes(descriptor_bytes(marker=-3))
    assert main(["info", "--set", str(tmp_path / "Old.set")]) == 2
    assert "2.12" in capsys.readouterr().err


def test_bad_config_reports_error(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    config = tmp_path / "cfg.json"
    config.write_text(json.dumps({"zoom": 1}), encoding="utf-8")
    assert main(["info", "--set", str(set_path), "--config", str(config)]) == 2
    assert "Unknown config keys: zoom" in capsys.readouterr().err


def test_mask_preview(tmp_path, capsys):
    src = tmp_path / "Demo-m3.bmp"
    half_mask_sheet().save(src, format="BMP")
    out = tmp_path / "preview" / "mask.png"
    assert main(["mask-preview", "--input", str(src), "--out", str(out), "--scale", "2"]) == 0
    with Image.open(out) as img:
        assert img.size == (8, 8)
        arr = np.asarray(img.convert("RGBA"))
    assert (arr[:, :4, 3] == 255).all()
    assert (arr[:, 4:, 3] == 0).all()
    assert json.loads(capsys.readouterr().out)["size"] == [8, 8]


def test_info_reports_loaded_sheet_sizes(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    assert main(["info", "--set", str(set_path)]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["sheet_sizes"] == {"terrain": [12, 4], "pieces": [12, 4], "masks": [4, 4]}


def test_unknown_category_reports_error(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    out = tmp_path / "images"
    assert main(["export", "--set", str(set_path), "--outdir", str(out), "--category", "bogus"]) == 2
    assert "Unknown category: bogus" in capsys.readouterr().err
    assert not out.exists()


@pytest.mark.parametrize("zoom", [0, 4, 7, "high"])
def test_config_zoom_level_out_of_range_reports_error(tmp_path, capsys, zoom):
    set_path = _make_set(tmp_path)
    config = tmp_path / "cfg.json"
    config.write_text(json.dumps({"zoom_level": zoom}), encoding="utf-8")
    assert main(["info", "--set", str(set_path), "--config", str(config)]) == 2
    err = capsys.readouterr().err
    assert "zoom_level must be" in err
    assert "1..3" in err


def test_export_requires_a_destination(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    with pytest.raises(SystemExit) as exc:
        main(["export", "--set", str(set_path)])
    assert exc.value.code == 2
    assert "--outdir" in capsys.readouterr().err


def test_export_rejects_two_destinations(tmp_path, capsys):
    set_path = _make_set(tmp_path)
    with pytest.raises(SystemExit) as exc:
        main(["export", "--set", str(set_path), "--outdir", str(tmp_path / "o"), "--zip", str(tmp_path / "m.zip")])
    assert exc.value.code == 2
    assert "not allowed with" in capsys.readouterr().err


def test_config_is_read_once(tmp_path, capsys, monkeypatch):
    import adc2tools.symbol_extract as cli

    set_path = _make_set(tmp_path, level=1)
    config = tmp_path / "cfg.yaml"
    config.write_text("zoom_level: 1\nverbose: true\n", encoding="utf-8")
    calls = []
    real = cli._load_config

    def counting(path):
        calls.append(path)
        return real(path)

    monkeypatch.setattr(cli, "_load_config", counting)
    assert main(["info", "--set", str(set_path), "--config", str(config)]) == 0
    assert calls == [config]
    assert json.loads(capsys.readouterr().out)["zoom_level"] == 1
