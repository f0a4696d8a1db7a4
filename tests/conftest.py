"""Shared fixtures: payer accounts, fake wallets and signed authorizations."""

import time

import pytest
from eth_account import Account

from cronos402.authorization import SignedTransferAuthorization, build_authorization, build_full_message
from cronos402.errors import SignatureDeclinedError
from cronos402.signer import SigningContext

TESTNET_CHAIN_ID = 338
PAYEE = "0x2222222222222222222222222222222222222222"
USDC_TESTNET = "0xc01efAaF7C5C61bEbFAeb358E1161b537b8bC0e0"


def sign_with(account, auth):
    """Sign outside any event loop, for sync fixtures."""
    sig = bytes(account.sign_typed_data(full_message=build_full_message(auth)).signature)
    return SignedTransferAuthorization(authorization=auth, signature="0x" + sig.hex())


class FakeSigner:
    """Wallet stand-in that signs with a local key and records every prompt."""

    def __init__(self, account, decline=False, fail_with=None):
        self.account = account
        self.decline = decline
        self.fail_with = fail_with
        self.sign_calls = []
        self.sent = []

    async def sign_typed_data(self, full_message):
        self.sign_calls.append(full_message)
        if self.decline:
            raise SignatureDeclinedError()
        if self.fail_with is not None:
            raise self.fail_with
        return bytes(self.account.sign_typed_data(full_message=full_message).signature)

    async def send_transaction(self, tx):
        self.sent.append(tx)
        return "0x" + "ab" * 32


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def signer(payer):
    return FakeSigner(payer)


@pytest.fixture
def context(payer, signer):
    return SigningContext(address=payer.address, chain_id=TESTNET_CHAIN_ID, signer=signer)


@pytest.fixture
def declining_context(payer):
    return SigningContext(
        address=payer.address,
        chain_id=TESTNET_CHAIN_ID,
        signer=FakeSigner(payer, decline=True),
    )


@pytest.fixture
def signed(context, payer):
    """A fresh 0.01 USDC.e testnet authorization from ``payer`` to ``PAYEE``."""
    auth = build_authorization(PAYEE, "0.01", context, "testnet", now=int(time.time()))
    return sign_with(payer, auth)
