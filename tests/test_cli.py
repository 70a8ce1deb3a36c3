"""
End-to-end tests for the merkle-claims command line.
"""
import json

import pytest

from merkle_claims import (
    DEFAULT_CLAIMS_CSV,
    DEFAULT_CLAIMS_JSON,
    DEFAULT_VERIFICATION_JSON,
    SAMPLE_ROWS,
    main,
)


@pytest.fixture
def built_dir(tmp_path):
    csv_path = tmp_path / "sample.csv"
    assert main(["sample", "--out", str(csv_path)]) == 0
    assert main(["build", "--csv", str(csv_path), "--out-dir", str(tmp_path)]) == 0
    return tmp_path


def test_build_writes_artifacts(built_dir, capsys):
    claims = json.loads((built_dir / DEFAULT_CLAIMS_JSON).read_text())
    verification = json.loads((built_dir / DEFAULT_VERIFICATION_JSON).read_text())
    assert (built_dir / DEFAULT_CLAIMS_CSV).exists()
    assert claims["merkleRoot"] == verification["root"]
    assert len(claims["claims"]) == len(SAMPLE_ROWS)
    assert claims["tokenTotal"] == "1000"
    assert verification["values"][0] == [SAMPLE_ROWS[0][0], "0", "100"]
    assert all(len(c["proof"]) == 2 for c in claims["claims"].values())


def test_proof_and_save(built_dir, monkeypatch, capsys):
    monkeypatch.chdir(built_dir)
    address = SAMPLE_ROWS[1][0]
    capsys.readouterr()
    assert main(["proof", "--address", address, "--save"]) == 0
    printed = capsys.readouterr().out
    assert '"amount": "200"' in printed
    saved = json.loads((built_dir / f"proof-{address[:8]}.json").read_text())
    assert saved["index"] == 1


def test_verify_valid(built_dir):
    path = str(built_dir / DEFAULT_CLAIMS_JSON)
    for address, _, _ in SAMPLE_ROWS:
        assert main(["verify", "--json", path, "--address", address]) == 0


def test_verify_tampered_amount(built_dir):
    path = built_dir / DEFAULT_CLAIMS_JSON
    doc = json.loads(path.read_text())
    doc["claims"][SAMPLE_ROWS[3][0]]["amount"] = "401"
    path.write_text(json.dumps(doc))
    assert main(["verify", "--json", str(path), "--address", SAMPLE_ROWS[3][0]]) == 1


def test_unknown_address(built_dir):
    path = str(built_dir / DEFAULT_CLAIMS_JSON)
    assert main(["proof", "--json", path, "--address", "0x" + "9" * 40]) == 1


def test_check_confirms_root(built_dir, capsys):
    assert main(["check", "--json", str(built_dir / DEFAULT_VERIFICATION_JSON)]) == 0
    assert "Root confirmed" in capsys.readouterr().out


def test_check_detects_edit(built_dir):
    path = built_dir / DEFAULT_VERIFICATION_JSON
    doc = json.loads(path.read_text())
    doc["values"][0][2] = "999"
    path.write_text(json.dumps(doc))
    assert main(["check", "--json", str(path)]) == 1


def test_csv_without_index_uses_row_position(tmp_path):
    csv_path = tmp_path / "rows.csv"
    csv_path.write_text("address,amount\n0x" + "1" * 40 + ",5\n0x" + "2" * 40 + ",6\n")
    assert main(["build", "--csv", str(csv_path), "--out-dir", str(tmp_path)]) == 0
    claims = json.loads((tmp_path / DEFAULT_CLAIMS_JSON).read_text())["claims"]
    assert claims["0x" + "2" * 40]["index"] == 1


def test_csv_bad_header(tmp_path):
    csv_path = tmp_path / "bad.csv"
    csv_path.write_text("wallet,amount\n0x" + "1" * 40 + ",5\n")
    assert main(["build", "--csv", str(csv_path), "--out-dir", str(tmp_path)]) == 1


def test_missing_file(tmp_path):
    assert main(["build", "--csv", str(tmp_path / "nope.csv")]) == 1


def test_csv_duplicate_index(tmp_path):
    csv_path = tmp_path / "dup.csv"
    csv_path.write_text("address,index,amount\n0x" + "1" * 40 + ",0,5\n0x" + "2" * 40 + ",0,6\n")
    assert main(["build", "--csv", str(csv_path), "--out-dir", str(tmp_path)]) == 1
    assert not (tmp_path / DEFAULT_CLAIMS_JSON).exists()


def test_csv_non_ascii_digits(tmp_path):
    csv_path = tmp_path / "digits.csv"
    csv_path.write_text("address,amount\n0x" + "1" * 40 + ",²\n", encoding="utf-8")
    assert main(["build", "--csv", str(csv_path), "--out-dir", str(tmp_path)]) == 1


def test_verify_expected_amount(built_dir, capsys):
    path = str(built_dir / DEFAULT_CLAIMS_JSON)
    address = SAMPLE_ROWS[2][0]
    assert main(["verify", "--json", path, "--address", address, "--amount", "300"]) == 0
    assert main(["verify", "--json", path, "--address", address, "--amount", "301"]) == 1
    assert "Amount mismatch" in capsys.readouterr().out


def test_verify_missing_root(built_dir):
    path = built_dir / DEFAULT_CLAIMS_JSON
    doc = json.loads(path.read_text())
    del doc["merkleRoot"]
    path.write_text(json.dumps(doc))
    assert main(["verify", "--json", str(path), "--address", SAMPLE_ROWS[0][0]]) == 1


@pytest.mark.parametrize("field", ["index", "amount", "proof"])
def test_claim_missing_field(built_dir, field):
    path = built_dir / DEFAULT_CLAIMS_JSON
    doc = json.loads(path.read_text())
    del doc["claims"][SAMPLE_ROWS[0][0]][field]
    path.write_text(json.dumps(doc))
    assert main(["verify", "--json", str(path), "--address", SAMPLE_ROWS[0][0]]) == 1
    assert main(["proof", "--json", str(path), "--address", SAMPLE_ROWS[0][0]]) == 1


@pytest.mark.parametrize("command", ["proof", "verify", "check"])
def test_top_level_list_document(tmp_path, command):
    path = tmp_path / "list.json"
    path.write_text("[1, 2, 3]")
    argv = [command, "--json", str(path)]
    if command != "check":
        argv += ["--address", SAMPLE_ROWS[0][0]]
    assert main(argv) == 1
