"""Connection-string parsing into endpoint descriptors.

Parsing is pure: nothing here resolves names or opens sockets.
"""
from dataclasses import dataclass, field
from urllib.parse import parse_qsl, quote, unquote, urlencode

from .constants import DEFAULT_PORTS, FALLBACK_PORT, TLS_SCHEMES
from .errors import MalformedConnectionString


@dataclass(frozen=True)
class EndpointDescriptor:
    scheme: str
    host: str
    port: int
    username: str = ""
    password: str = ""
    path: str = ""
    query: dict[str, str] = field(default_factory=dict)

    @property
    def use_tls(self) -> bool:
        return self.scheme in TLS_SCHEMES

    @property
    def host_port(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    def param(self, name: str, default: str | None = None) -> str | None:
        """Return a query parameter, matching the name case-insensitively."""
        lowered = name.lower()
        for key, value in self.query.items():
            if key.lower() == lowered:
                return value
        return default

    def to_url(self, include_credentials: bool = False) -> str:
        """Serialize back to ``scheme://[user[:password]@]host:port[/path][?query]``."""
        userinfo = ""
        if include_credentials and self.username:
            userinfo = quote(self.username, safe="")
            if self.password:
                userinfo += ":" + quote(self.password, safe="")
            userinfo += "@"
        url = f"{self.scheme}://{userinfo}{self.host_port}"
        if self.path:
            url += "/" + self.path
        if self.query:
            url += "?" + urlencode(self.query)
        return url

    def redacted(self) -> str:
        """URL form safe for logs: username kept, password masked."""
        url = self.to_url()
        if not self.username:
            return url
        masked = "****" if self.password else ""
        userinfo = self.username + (":" + masked if masked else "")
        return url.replace("://", f"://{userinfo}@", 1)


def default_port(scheme: str) -> int:
    return DEFAULT_PORTS.get(scheme.lower(), FALLBACK_PORT)


def _split_host_port(hostport: str, scheme: str) -> tuple[str, int]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end == -1:
            raise MalformedConnectionString(f"unterminated IPv6 literal '{hostport}'")
        host = hostport[1:end]
        rest = hostport[end + 1:]
        if rest and not rest.startswith(":"):
            raise MalformedConnectionString(f"unexpected characters after IPv6 literal '{hostport}'")
        raw_port = rest[1:] if rest else None
    else:
        host, sep, raw_port = hostport.partition(":")
        if not sep:
            raw_port = None

    if not host:
        raise MalformedConnectionString("host is empty")

    if raw_port is None:
        return host, default_port(scheme)
    if not raw_port.isdigit():
        raise MalformedConnectionString(f"port '{raw_port}' is not a number")
    port = int(raw_port)
    if not 0 < port < 65536:
        raise MalformedConnectionString(f"port {port} is out of range")
    return host, port


def _authority_end(rest: str) -> int:
    """Index of the first '/' or '?', where host[:port] ends."""
    end = len(rest)
    for marker in ("/", "?"):
        idx = rest.find(marker)
        if idx != -1:
            end = min(end, idx)
    return end


def parse_connection_string(raw: str | None) -> EndpointDescriptor:
    """Parse ``scheme://[user[:password]@]host[:port][/path][?query]``.

    Args:
        raw: The connection string as read from the environment

    Returns:
        EndpointDescriptor with the port always resolved

    Raises:
        MalformedConnectionString: If the string cannot be parsed
    """
    if raw is None or not str(raw).strip():
        raise MalformedConnectionString("connection string is empty")
    text = str(raw).strip()

    scheme, sep, rest = text.partition("://")
    if not sep:
        raise MalformedConnectionString("missing '://' after scheme")
    if not scheme:
        raise MalformedConnectionString("scheme is empty")
    scheme = scheme.lower()

    username = password = ""
    head = rest[:_authority_end(rest)]
    if "@" in head:
        # Last '@' before the path or query so passwords may contain '@'
        userinfo, _, host_head = head.rpartition("@")
        rest = host_head + rest[len(head):]
        user, _, pw = userinfo.partition(":")
        username = unquote(user)
        password = unquote(pw)
        if not username:
            raise MalformedConnectionString("username is empty but userinfo is present")

    end = _authority_end(rest)
    hostport, remainder = rest[:end], rest[end:]
    host, port = _split_host_port(hostport, scheme)

    path = ""
    query_string = ""
    if remainder.startswith("/"):
        path, _, query_string = remainder[1:].partition("?")
    elif remainder.startswith("?"):
        query_string = remainder[1:]

    query = dict(parse_qsl(query_string, keep_blank_values=True))

    return EndpointDescriptor(
        scheme=scheme,
        host=host,
        port=port,
        username=username,
        password=password,
        path=path,
        query=query,
    )


def parse_bootstrap_servers(raw: str | None) -> list[EndpointDescriptor]:
    """Parse a broker bootstrap list such as ``b1:9092,b2:9092`` or ``SSL://b1:9093``."""
    if raw is None or not str(raw).strip():
        raise MalformedConnectionString("bootstrap server list is empty")
    servers = []
    for item in str(raw).split(","):
        item = item.strip()
        if not item:
            continue
        if "://" not in item:
            item = f"kafka://{item}"
        servers.append(parse_connection_string(item))
    if not servers:
        raise MalformedConnectionString("bootstrap server list is empty")
    return servers


def format_bootstrap_servers(servers: list[EndpointDescriptor]) -> str:
    """Render descriptors back to the plain ``host:port,...`` form brokers expect."""
    return ",".join(server.host_port for server in servers)
