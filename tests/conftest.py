"""Shared fixtures: server keypair, vocabulary directory, running app."""
import pytest
import orjson

from wordmatch.channel.client import SecureChannelClient
from wordmatch.channel.key_agreement import KeyAgreementService, generate_private_key
from wordmatch.server import create_app
from wordmatch.vocabulary import VocabularyStore


WELCOME_UNIT = [
    {
        "word": "hello",
        "syllable_breaks": "hel-lo",
        "phonetic": "/həˈləʊ/",
        "explanation": [{"pos": "int.", "meaning": "你好"}],
    },
    {
        "word": "goodbye",
        "phonetic": "/ɡʊdˈbaɪ/",
        "explanation": [{"pos": "int.", "meaning": "再见"}],
    },
]

UNIT_ONE = [
    {"word": f"word{i}", "explanation": [{"meaning": f"词{i}"}]}
    for i in range(12)
]


@pytest.fixture(scope="session")
def server_private_key():
    """One 2048-bit key for the whole run; generation is slow."""
    return generate_private_key()


@pytest.fixture(scope="session")
def other_private_key():
    return generate_private_key()


@pytest.fixture
def key_service(server_private_key):
    return KeyAgreementService(server_private_key)


@pytest.fixture
def vocab_dir(tmp_path):
    """Vocabulary directory with two volumes and one unrelated file."""
    (tmp_path / "Volume1_Welcome_Unit.json").write_bytes(orjson.dumps(WELCOME_UNIT))
    (tmp_path / "Volume1_Unit_1.json").write_bytes(orjson.dumps(UNIT_ONE))
    (tmp_path / "Volume2_Unit_10.json").write_bytes(orjson.dumps(UNIT_ONE[:3]))
    (tmp_path / "Volume2_Unit_2.json").write_bytes(orjson.dumps(UNIT_ONE[:1]))
    (tmp_path / "README.txt").write_text("not a unit")
    return tmp_path


@pytest.fixture
def store(vocab_dir):
    return VocabularyStore(vocab_dir)


@pytest.fixture
def app(key_service, store):
    return create_app(key_service=key_service, store=store)


@pytest.fixture
async def client(aiohttp_client, app):
    return await aiohttp_client(app)


@pytest.fixture
async def channel(client):
    """SecureChannelClient talking to the test server."""
    return SecureChannelClient(str(client.make_url("/api")), session=client.session)


@pytest.fixture
def welcome_unit():
    return WELCOME_UNIT


@pytest.fixture
def unit_one():
    return UNIT_ONE
