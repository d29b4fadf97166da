"""Fixtures and mock infrastructure for email channel tests."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Mapping, Optional

import pytest

from mailbridge.channel.conversation_store import ConversationStore
from mailbridge.channel.inbox_processor import InboxProcessor
from mailbridge.channel.outbound import OutboundMailer
from mailbridge.channel.runtime import InboundRecord, ReplyPayload
from mailbridge.channel.smtp_pool import SmtpTransportPool
from mailbridge.configuration import ImapSettings, ResolvedEmailAccount, resolve_email_account
from mailbridge.errors import MailboxConnectionError


# ============================================================================
# Message builders
# ============================================================================


def make_raw_email(
    *,
    sender: str = "Alice Example <alice@example.org>",
    to: str = "bot@example.com",
    subject: Optional[str] = "Hello",
    body: Optional[str] = "Hi there",
    html: Optional[str] = None,
    message_id: Optional[str] = "<msg-1@example.org>",
    in_reply_to: Optional[str] = None,
    attachments: Optional[Dict[str, bytes]] = None,
) -> bytes:
    """Build raw RFC822 bytes for a test message."""
    if html is not None or attachments:
        msg: Any = MIMEMultipart("mixed")
        if body is not None:
            msg.attach(MIMEText(body, "plain", "utf-8"))
        if html is not None:
            msg.attach(MIMEText(html, "html", "utf-8"))
        for filename, content in (attachments or {}).items():
            part = MIMEApplication(content, Name=filename)
            part["Content-Disposition"] = f'attachment; filename="{filename}"'
            msg.attach(part)
    else:
        msg = MIMEText(body or "", "plain", "utf-8")

    if sender:
        msg["From"] = sender
    msg["To"] = to
    if subject is not None:
        msg["Subject"] = subject
    msg["Date"] = "Mon, 01 Jan 2024 10:00:00 +0000"
    if message_id:
        msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
        msg["References"] = in_reply_to
    return msg.as_bytes()


# ============================================================================
# Mock IMAP connection
# ============================================================================


class MockImapConnection:
    """In-memory stand-in for :class:`ImapConnection`.

    Holds an INBOX of raw messages and a seen set. Failures are scripted by
    pushing exceptions onto ``connect_errors`` (consumed one per connect) or
    setting ``search_error`` / ``fetch_errors``. Setting ``connect_gate`` holds
    ``connect()`` until the event is set.
    """

    def __init__(self, account_id: str = "default") -> None:
        self.settings = ImapSettings(host="imap.example.com", user="bot@example.com")
        self.account_id = account_id
        self.messages: Dict[int, bytes] = {}
        self.seen: set = set()
        self.connect_errors: List[BaseException] = []
        self.search_error: Optional[BaseException] = None
        self.fetch_errors: Dict[int, BaseException] = {}
        self.connect_calls = 0
        self.close_calls = 0
        self.select_calls = 0
        self._connected = False
        self._lock = asyncio.Lock()
        self.on_search: Optional[Callable[[], None]] = None
        self.connect_gate: Optional[asyncio.Event] = None
        self.connect_started = asyncio.Event()

    def add_message(self, uid: int, raw: bytes) -> None:
        self.messages[uid] = raw

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        self.connect_started.set()
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self._connected = True

    async def close(self) -> None:
        self.close_calls += 1
        self._connected = False

    @asynccontextmanager
    async def mailbox_lock(self):
        async with self._lock:
            if not self._connected:
                raise MailboxConnectionError("IMAP connection is not open")
            self.select_calls += 1
            yield self

    async def search_unseen(self) -> List[int]:
        if self.on_search is not None:
            self.on_search()
        if self.search_error is not None:
            error, self.search_error = self.search_error, None
            raise error
        return sorted(uid for uid in self.messages if uid not in self.seen)

    async def fetch_raw(self, uid: int) -> Optional[bytes]:
        if uid in self.fetch_errors:
            raise self.fetch_errors.pop(uid)
        return self.messages.get(uid)

    async def mark_seen(self, uid: int) -> None:
        self.seen.add(uid)

    async def is_alive(self) -> bool:
        return self._connected


@pytest.fixture
def mock_connection() -> MockImapConnection:
    connection = MockImapConnection()
    return connection


# ============================================================================
# Stub imapclient client (for the real ImapConnection)
# ============================================================================


class StubIMAPClient:
    """Minimal IMAPClient-compatible stub recording every call."""

    instances: List["StubIMAPClient"] = []
    login_error: Optional[BaseException] = None
    messages: Dict[int, bytes] = {}

    def __init__(self, host: str, port: int = 993, *, ssl: bool, ssl_context: Any, timeout: Any, use_uid: bool) -> None:
        self.host = host
        self.port = port
        self.ssl = ssl
        self.ssl_context = ssl_context
        self.timeout = timeout
        self.use_uid = use_uid
        self.calls: List[tuple] = []
        self.flags: Dict[int, list] = {}
        StubIMAPClient.instances.append(self)

    def starttls(self, ssl_context: Any) -> None:
        self.calls.append(("starttls",))

    def login(self, user: str, password: str) -> None:
        self.calls.append(("login", user, password))
        if StubIMAPClient.login_error is not None:
            raise StubIMAPClient.login_error

    def select_folder(self, folder: str) -> Dict[bytes, Any]:
        self.calls.append(("select_folder", folder))
        return {b"EXISTS": len(self.messages)}

    def search(self, criteria: List[str]) -> List[int]:
        self.calls.append(("search", criteria))
        return list(reversed(sorted(self.messages)))

    def fetch(self, uids: List[int], items: List[str]) -> Dict[int, Dict[bytes, Any]]:
        self.calls.append(("fetch", uids, items))
        return {uid: {b"SEQ": uid, b"RFC822": self.messages[uid]} for uid in uids if uid in self.messages}

    def add_flags(self, uids: List[int], flags: List[bytes]) -> None:
        self.calls.append(("add_flags", uids, flags))
        for uid in uids:
            self.flags.setdefault(uid, []).extend(flags)

    def noop(self) -> tuple:
        self.calls.append(("noop",))
        return (b"NOOP completed", [])

    def logout(self) -> bytes:
        self.calls.append(("logout",))
        return b"Logging out"

    def shutdown(self) -> None:
        self.calls.append(("shutdown",))


@pytest.fixture
def stub_imap_client(monkeypatch):
    """Route ImapConnection through :class:`StubIMAPClient`."""
    import mailbridge.channel.connection_manager as cm

    StubIMAPClient.instances = []
    StubIMAPClient.login_error = None
    StubIMAPClient.messages = {}
    monkeypatch.setattr(cm, "IMAPClient", StubIMAPClient)
    return StubIMAPClient


# ============================================================================
# Fake SMTP client
# ============================================================================


class FakeSmtpClient:
    """aiosmtplib.SMTP look-alike recording sent messages."""

    def __init__(self, settings: Any = None) -> None:
        self.settings = settings
        self.is_connected = False
        self.sent: List[Any] = []
        self.noop_error: Optional[BaseException] = None
        self.send_error: Optional[BaseException] = None
        self.login_calls: List[tuple] = []
        self.noop_calls = 0
        self.quit_calls = 0

    async def connect(self) -> None:
        self.is_connected = True

    async def login(self, user: str, password: str) -> None:
        self.login_calls.append((user, password))

    async def noop(self) -> None:
        self.noop_calls += 1
        if self.noop_error is not None:
            raise self.noop_error

    async def send_message(self, message: Any) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def quit(self) -> None:
        self.quit_calls += 1
        self.is_connected = False

    def close(self) -> None:
        self.is_connected = False


class FakeSmtpFactory:
    """Client factory for :class:`SmtpTransportPool` keeping every created client."""

    def __init__(self) -> None:
        self.created: List[FakeSmtpClient] = []

    def __call__(self, settings: Any) -> FakeSmtpClient:
        client = FakeSmtpClient(settings)
        self.created.append(client)
        return client

    @property
    def sent(self) -> List[Any]:
        return [message for client in self.created for message in client.sent]


@pytest.fixture
def smtp_factory() -> FakeSmtpFactory:
    return FakeSmtpFactory()


@pytest.fixture
def smtp_pool(smtp_factory: FakeSmtpFactory) -> SmtpTransportPool:
    return SmtpTransportPool(client_factory=smtp_factory)


# ============================================================================
# Fake host runtime
# ============================================================================


class FakeRuntime:
    """Host runtime replying to every inbound message via ``reply_fn``."""

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        reply_fn: Optional[Callable[[Dict[str, Any]], List[ReplyPayload]]] = None,
    ) -> None:
        self.config = config or {}
        self.reply_fn = reply_fn or (lambda ctx: [ReplyPayload(text=f"Re-answer to: {ctx['Body']}")])
        self.records: List[InboundRecord] = []
        self.dispatched: List[Dict[str, Any]] = []
        self.dispatch_error: Optional[BaseException] = None

    def load_config(self) -> Mapping[str, Any]:
        return self.config

    def finalize_inbound_context(self, record: InboundRecord) -> Dict[str, Any]:
        self.records.append(record)
        return record.to_context()

    async def dispatch_reply_with_buffered_dispatcher(self, *, context, config, deliver) -> None:
        self.dispatched.append(context)
        if self.dispatch_error is not None:
            raise self.dispatch_error
        for payload in self.reply_fn(context):
            await deliver(payload)


@pytest.fixture
def runtime(host_config) -> FakeRuntime:
    return FakeRuntime(config=host_config)


@pytest.fixture
def account(host_config) -> ResolvedEmailAccount:
    return resolve_email_account(host_config)


@pytest.fixture
def conversations() -> ConversationStore:
    store = ConversationStore()
    yield store
    store.destroy()


@pytest.fixture
def processor(account, runtime, conversations, smtp_pool) -> InboxProcessor:
    return InboxProcessor(
        account=account,
        runtime=runtime,
        conversations=conversations,
        mailer=OutboundMailer(smtp_pool),
    )


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def raw_email() -> Callable[..., bytes]:
    """Builder for raw RFC822 test messages (see :func:`make_raw_email`)."""
    return make_raw_email


@pytest.fixture
def make_runtime() -> Callable[..., FakeRuntime]:
    return FakeRuntime


@pytest.fixture
def make_connection() -> Callable[..., MockImapConnection]:
    return MockImapConnection
