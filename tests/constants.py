from domain.base_types import AccountId, AssetId

BTC = AssetId("BTC")
ETH = AssetId("ETH")
USD = AssetId("USD")
EUR = AssetId("EUR")
CRC = AssetId("CRC")
USDT = AssetId("USDT")
BNB = AssetId("BNB")

KRAKEN = AccountId("Kraken")
BINANCE = AccountId("Binance")
LEDGER = AccountId("Ledger Nano")
BANCO = AccountId("Banco Nacional")
