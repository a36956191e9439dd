from pathlib import Path

import pytest

from main import main


@pytest.fixture()
def db_file(tmp_path: Path) -> str:
    path = tmp_path / "portfolio.db"
    assert main(["--db-file", str(path), "init"]) == 0
    assert main(["--db-file", str(path), "account", "add", "Kraken", "--type", "exchange", "--category", "trading"]) == 0
    return str(path)


def test_init_is_idempotent(db_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    capsys.readouterr()

    assert main(["--db-file", db_file, "init"]) == 0

    assert "seeded 0 currencies" in capsys.readouterr().out


def test_record_and_show_holdings(db_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    for args in (
        ["tx", "record", "buy", "--at", "2024-01-01T10:00:00", "--account", "Kraken", "--asset", "BTC",
         "--quantity", "0.5", "--price", "40000"],
        ["tx", "record", "sell", "--at", "2024-01-02T10:00:00", "--account", "Kraken", "--asset", "BTC",
         "--quantity", "0.25", "--price", "50000"],
    ):
        assert main(["--db-file", db_file, *args]) == 0
    recorded = capsys.readouterr().out
    assert "Realized gain: 2500 USD" in recorded

    assert main(["--db-file", db_file, "holdings"]) == 0
    holdings = capsys.readouterr().out
    assert "Kraken" in holdings and "0.25" in holdings

    assert main(["--db-file", db_file, "portfolio", "--price", "BTC=60000"]) == 0
    portfolio = capsys.readouterr().out
    assert "Portfolio (USD):" in portfolio
    assert "15,000.00" in portfolio


def test_ledger_errors_exit_with_status_1(db_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    capsys.readouterr()

    code = main(
        ["--db-file", db_file, "tx", "record", "sell", "--at", "2024-01-01T10:00:00", "--account", "Kraken",
         "--asset", "BTC", "--quantity", "1", "--price", "100"]
    )

    assert code == 1
    assert "error: Insufficient balance" in capsys.readouterr().err


def test_rates_round_trip_through_cli(db_file: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--db-file", db_file, "rate", "set", "USD", "CRC", "520", "--at", "2024-01-01T00:00:00"]) == 0
    assert main(["--db-file", db_file, "rate", "get", "crc", "usd"]) == 0

    out = capsys.readouterr().out
    assert "USD/CRC = 520" in out
    assert "CRC/USD = 0.0019230769" in out


def test_bad_price_argument_is_rejected(db_file: str) -> None:
    with pytest.raises(SystemExit):
        main(["--db-file", db_file, "portfolio", "--price", "BTC"])
