"""
Constants for the HealthChain record-integrity engine.

This module defines the fixed record categories and access duration options,
and loads deployment configuration from the environment (or a .env file).
"""

import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Record categories accepted by the registry
RECORD_TYPES = [
    "Physical Examination",
    "Lab Results",
    "Prescription",
    "Diagnosis",
    "Vaccination",
    "Allergy Information",
    "Treatment Plan",
    "Medical Imaging",
    "Surgery",
    "Mental Health Evaluation",
    "Dental Records",
]

# Access durations offered to providers, in days
ACCESS_DURATION_DAYS = [1, 7, 14, 30]

SECONDS_PER_DAY = 86400

# "bounded": any whole day count up to MAX_ACCESS_DAYS
# "enumerated": only the values in ACCESS_DURATION_DAYS
ACCESS_DURATION_POLICY = os.getenv("ACCESS_DURATION_POLICY", "bounded")
MAX_ACCESS_DAYS = int(os.getenv("MAX_ACCESS_DAYS", "30"))

# Upper bound on the JSON-encoded size of record metadata
MAX_METADATA_BYTES = int(os.getenv("MAX_METADATA_BYTES", "4096"))

# Key derivation
KDF_ITERATIONS = int(os.getenv("KDF_ITERATIONS", "200000"))
MAX_KDF_ITERATIONS = 2000000

# Retry policy for content-store and ledger submission
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF = float(os.getenv("RETRY_BACKOFF", "0.5"))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "10"))
CONFIRMATION_TIMEOUT = float(os.getenv("CONFIRMATION_TIMEOUT", "120"))

# Ledger backend: "memory" or "web3"
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")

# RPC URL
RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")

# Contract address
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")

# Signing key for ledger transactions
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "")

# IPFS URLs: multiaddr for ipfshttpclient, HTTP RPC endpoint for direct calls
IPFS_URL = os.getenv("IPFS_URL", "/ip4/127.0.0.1/tcp/5001")
IPFS_API_URL = os.getenv("IPFS_API_URL", "http://127.0.0.1:5001/api/v0")

# Content store selected by the API service
CONTENT_STORE_URL = os.getenv("CONTENT_STORE_URL", IPFS_API_URL)
