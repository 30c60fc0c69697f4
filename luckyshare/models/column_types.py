from sqlalchemy import BigInteger, Integer, Numeric

# SQLite only autoincrements INTEGER PRIMARY KEY, so keep a narrow variant there.
ID_TYPE = BigInteger().with_variant(Integer, "sqlite")

# Prices and buyout amounts; always handled as ``Decimal``.
MONEY_TYPE = Numeric(12, 2, asdecimal=True)
