import logging

from healthchain.models import normalize_address

logging.getLogger("healthchain").setLevel(logging.CRITICAL)

# Hardhat development accounts
TEST_ACCOUNTS = {
    "Patient 1": {
        "address": normalize_address("0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"),
        "private_key": "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    },
    "Doctor 1": {
        "address": normalize_address("0x70997970C51812dc3A010C7d01b50e0d17dc79C8"),
        "private_key": "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    },
    "Doctor 2": {
        "address": normalize_address("0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"),
        "private_key": "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
    },
    "Patient 2": {
        "address": normalize_address("0x90F79bf6EB2c4f870365E785982E1f101E93b906"),
    },
}

PATIENT = TEST_ACCOUNTS["Patient 1"]["address"]
DOCTOR = TEST_ACCOUNTS["Doctor 1"]["address"]
DOCTOR_2 = TEST_ACCOUNTS["Doctor 2"]["address"]
PATIENT_2 = TEST_ACCOUNTS["Patient 2"]["address"]

DAY = 86400
START = 1700000000

# Low iteration count keeps key derivation fast in tests
TEST_ITERATIONS = 1000

TEST_RECORD = {
    "patientID": "123",
    "date": "2025-04-18",
    "diagnosis": "Hypertension",
    "doctorID": "DOC789",
    "notes": "Patient advised to monitor blood pressure daily and start low-dose medication."
}

CID_1 = "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"
CID_2 = "bafkreibm6jg3ux5qumhcn2b3flc3tyu6dmlb4xa7u5bf44yegnrjhc4yeq"


class FakeClock:
    """Settable ledger clock"""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


class FakeSleep:
    """Records sleeps and advances a FakeClock instead of blocking"""

    def __init__(self, clock=None):
        self.clock = clock
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)
