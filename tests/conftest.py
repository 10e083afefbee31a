"""
Shared fixtures.

tiktoken downloads its vocabularies on first use, so tests swap in a
whitespace tokenizer with the same encode() signature.
"""

import os
import shutil
import tempfile
from unittest.mock import patch

import pytest

from impact_ledger.core.ledger import UsageLedger
from impact_ledger.storage.repository import initialize_schema


class WhitespaceEncoding:
    """One token per whitespace-separated word."""

    def encode(self, text, disallowed_special=()):
        return text.split()


@pytest.fixture
def fake_tiktoken():
    with patch("tiktoken.encoding_for_model") as mock:
        mock.return_value = WhitespaceEncoding()
        yield mock


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "ledger.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def ledger(db_path):
    return UsageLedger(db_path)
