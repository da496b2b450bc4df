# backend/app/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/ledgerpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///ledgerpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Mobile-money provider (Daraja-style STK Push)
    MPESA_BASE_URL = os.environ.get("MPESA_BASE_URL", "https://api.safaricom.co.ke")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY")
    MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "http://localhost:5000/api/mpesa/callback")
    MPESA_TRANSACTION_TYPE = os.environ.get("MPESA_TRANSACTION_TYPE", "CustomerBuyGoodsOnline")
    MPESA_HTTP_TIMEOUT_SECONDS = float(os.environ.get("MPESA_HTTP_TIMEOUT_SECONDS", "30"))

    # Pending STK pushes older than this are failed by policy
    MPESA_PENDING_TIMEOUT_SECONDS = int(os.environ.get("MPESA_PENDING_TIMEOUT_SECONDS", "90"))

    # Compare-and-set attempts on a product's stock counter before giving up
    STOCK_CAS_ATTEMPTS = int(os.environ.get("STOCK_CAS_ATTEMPTS", "3"))
