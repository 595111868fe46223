import asyncio
import base64
from pathlib import Path
from typing import Any

import pytest

from m_agent.agent.api import ChatService
from m_agent.config.schema import Config
from m_agent.gateway.adapter import (
    GatewayMetadata,
    build_gateway_context,
    derive_session_key,
    normalize_gateway_messages,
    resolve_gateway_session_id,
)
from m_agent.gateway.media import normalize_image, resolve_media_type, sniff_image_type
from m_agent.providers.base import LLMProvider, StreamDelta
from m_agent.providers.credentials import Credential
from m_agent.session.store import SessionScope

PNG_HEAD = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 24
GIF_HEAD = b"GIF89a" + b"\x00" * 26


class EchoProvider(LLMProvider):
    def __init__(self):
        super().__init__(api_key=None, api_base=None)
        self.calls: list[dict[str, Any]] = []

    async def stream(self, *, system_prompt, messages, tools=None, model=None, reasoning_effort=None, credential=None, cancel=None):
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages)})
        yield StreamDelta.text_delta(f"reply {len(self.calls)}")
        yield StreamDelta.finish()

    def get_default_model(self) -> str:
        return "dummy-model"


class StaticCredentials:
    def resolve(self, model: str) -> Credential | None:
        return Credential(provider="anthropic", api_key="test-key")


def _service(tmp_path: Path) -> tuple[ChatService, EchoProvider]:
    config = Config()
    config.agents.defaults.home = str(tmp_path / "home")
    config.agents.defaults.workspace = str(tmp_path / "workspace")
    provider = EchoProvider()
    service = ChatService(config, provider=provider, credentials=StaticCredentials(), plugins=[])
    return service, provider


# ── media ──────────────────────────────────────────────────────────────────


def test_bare_base64_png_is_sniffed():
    payload = base64.b64encode(PNG_HEAD).decode("ascii")
    messages = normalize_gateway_messages([{"role": "user", "text": "look", "images": [payload]}])
    part = messages[0].parts[1]
    assert part.type == "file"
    assert part.media_type == "image/png"
    assert part.data == f"data:image/png;base64,{payload}"


def test_declared_specific_type_wins_over_sniffing():
    payload = base64.b64encode(PNG_HEAD).decode("ascii")
    part = normalize_image({"data": payload, "mimeType": "image/webp"})
    assert part.media_type == "image/webp"


def test_generic_declared_type_falls_back_to_sniffing():
    payload = base64.b64encode(GIF_HEAD).decode("ascii")
    part = normalize_image({"data": payload, "mediaType": "application/octet-stream"})
    assert part.media_type == "image/gif"


def test_data_uri_and_url_resolution():
    payload = base64.b64encode(PNG_HEAD).decode("ascii")
    assert normalize_image(f"data:;base64,{payload}").media_type == "image/png"
    assert normalize_image("https://cdn.example.com/photo.png?size=2").media_type == "image/png"
    url_part = normalize_image({"url": "https://cdn.example.com/blob"})
    assert url_part.media_type == "image/jpeg"
    assert url_part.data == "https://cdn.example.com/blob"


def test_local_paths_are_rejected_for_gateway_input(tmp_path: Path):
    secret = tmp_path / "secret.txt"
    secret.write_bytes(b"TOP-SECRET-TOKEN")
    messages = normalize_gateway_messages(
        [
            {
                "text": "hi",
                "images": [str(secret), f"file://{secret}", {"path": str(secret)}],
            }
        ]
    )
    assert [part.type for part in messages[0].parts] == ["text"]
    with pytest.raises(ValueError):
        normalize_image({"path": str(secret)})


def test_trusted_callers_may_read_local_files(tmp_path: Path):
    image = tmp_path / "pic.bin"
    image.write_bytes(GIF_HEAD)
    part = normalize_image({"path": str(image)}, allow_local_files=True)
    assert part.media_type == "image/gif"
    assert part.data.startswith("data:image/gif;base64,")


def test_unreadable_images_are_skipped(tmp_path: Path):
    messages = normalize_gateway_messages(
        [{"text": "hi", "images": [{"path": str(tmp_path / "missing.png")}]}]
    )
    assert [part.type for part in messages[0].parts] == ["text"]


def test_sniff_and_default():
    assert sniff_image_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert sniff_image_type(b"\x00\x00\x00\x1cftypheic") == "image/heic"
    assert sniff_image_type(b"hello") is None
    assert resolve_media_type() == "image/jpeg"


def test_message_ids_are_unique_per_message():
    messages = normalize_gateway_messages(
        [
            {"text": "a", "timestamp": 1700000000},
            {"text": "b", "timestamp": 1700000000},
            {"text": "c"},
        ],
        GatewayMetadata(channel="telegram"),
    )
    ids = [message.id for message in messages]
    assert len(set(ids)) == 3
    assert ids[0].startswith("1700000000-0-")
    assert ids[1].startswith("1700000000-1-")
    assert ids[2].split("-")[1] == "2"
    assert messages[2].metadata == {"source": "gateway", "channel": "telegram"}

    again = normalize_gateway_messages([{"text": "a", "timestamp": 1700000000}])
    assert again[0].id != ids[0]


# ── session keys ───────────────────────────────────────────────────────────


def test_session_key_is_pure_and_peer_specific():
    meta = GatewayMetadata(agent_id="main", channel="Telegram", peer_id="123", is_group=False)
    assert derive_session_key(meta) == "agent:main:telegram:dm:123"
    assert derive_session_key(meta) == derive_session_key(meta.model_copy())
    other = meta.model_copy(update={"peer_id": "456"})
    assert derive_session_key(other) != derive_session_key(meta)


def test_group_key_uses_chat_id_and_default_agent():
    meta = GatewayMetadata(channel="whatsapp", peer_id="alice", chat_id="grp-9", is_group=True)
    assert derive_session_key(meta) == "agent:main:whatsapp:group:grp-9"
    assert derive_session_key(GatewayMetadata(channel="whatsapp")) is None


def test_session_id_resolution_order():
    meta = GatewayMetadata(channel="telegram", peer_id="1", session_key="custom-key")
    assert resolve_gateway_session_id("explicit", meta) == "explicit"
    assert resolve_gateway_session_id(None, meta) == "custom-key"
    assert resolve_gateway_session_id("  ", GatewayMetadata(channel="telegram", peer_id="1")) == "agent:main:telegram:dm:1"
    generated = resolve_gateway_session_id(None, None)
    assert generated.startswith("gateway-")
    assert len(generated.rsplit("-", 1)[-1]) == 6


def test_gateway_context_block():
    block = build_gateway_context(
        GatewayMetadata(channel="telegram", display_name="Ana", peer_id="123", is_group=False)
    )
    assert block.splitlines() == [
        "Gateway context:",
        "Channel: telegram",
        "Sender: Ana",
        "Peer ID: 123",
        "Group message: no",
    ]
    assert build_gateway_context(GatewayMetadata()) is None
    assert build_gateway_context(None) is None


# ── gateway turns through the service ──────────────────────────────────────


def test_successive_gateway_messages_share_one_session(tmp_path: Path):
    service, provider = _service(tmp_path)
    gateway = {"agentId": "main", "channel": "telegram", "peerId": "123", "isGroup": False, "displayName": "Ana"}

    first = asyncio.run(
        service.handle_gateway_chat({"messages": [{"role": "user", "text": "hello"}], "gateway": gateway})
    )
    stored_first = service.get_session(first["sessionId"], gateway=True)
    second = asyncio.run(
        service.handle_gateway_chat({"messages": [{"role": "user", "text": "again"}], "gateway": gateway})
    )
    stored_second = service.get_session(second["sessionId"], gateway=True)

    assert first["sessionId"] == second["sessionId"] == "agent:main:telegram:dm:123"
    assert first["text"] == "reply 1"
    assert second["text"] == "reply 2"
    assert stored_second.message_count > stored_first.message_count
    assert [m.text for m in stored_second.messages] == ["hello", "reply 1", "again", "reply 2"]
    assert stored_second.channel == "telegram"
    assert stored_second.session_key == "agent:main:telegram:dm:123"
    assert stored_second.title == "hello"
    assert "Sender: Ana" in provider.calls[-1]["system_prompt"]
    assert (tmp_path / "home" / "shared" / "gateway-sessions" / "agent:main:telegram:dm:123.json").exists()


def test_gateway_image_only_message_title(tmp_path: Path):
    service, _ = _service(tmp_path)
    payload = base64.b64encode(PNG_HEAD).decode("ascii")
    result = asyncio.run(
        service.handle_gateway_chat(
            {
                "sessionId": "g-1",
                "activeWorkspaceId": "team",
                "messages": [{"role": "user", "images": [payload]}],
            }
        )
    )
    session = service.get_session(result["sessionId"], gateway=True, workspace_id="team")
    assert session.title == "Image message"
    assert session.messages[0].images()[0].media_type == "image/png"


def test_gateway_failure_is_persisted_then_raised(tmp_path: Path):
    from m_agent.errors import GenerationError

    class BrokenProvider(EchoProvider):
        async def stream(self, **kwargs):
            raise RuntimeError("401 Unauthorized")
            yield  # pragma: no cover

    config = Config()
    config.agents.defaults.home = str(tmp_path / "home")
    config.agents.defaults.workspace = str(tmp_path / "workspace")
    service = ChatService(config, provider=BrokenProvider(), credentials=StaticCredentials(), plugins=[])

    with pytest.raises(GenerationError) as excinfo:
        asyncio.run(service.handle_gateway_chat({"sessionId": "g-2", "messages": [{"text": "hi"}]}))
    assert excinfo.value.category == "authentication"
    stored = service.store.load("g-2", SessionScope.gateway())
    assert stored is not None
    assert stored.messages[0].text == "hi"
