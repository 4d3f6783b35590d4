"""API server: JSON-RPC over plain TCP plus a minimal HTTP status page."""

from __future__ import annotations

import hmac
import ipaddress
import json
import logging
import re
import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from kpminer.apirequest import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    ApiError,
    check_write_access,
    get_bool,
    get_object,
    get_string,
    get_uint,
    get_uint64,
    parse_request_id,
)
from kpminer.apistats import http_stat_page, miner_stat1, miner_stat_detail

log = logging.getLogger(__name__)

UNPROCESSABLE = -422
UNAUTHORIZED = -401
FORBIDDEN = -403

# Verbosity values must stay below this bound.
LOG_NEXT = 512

# Password bytes beyond this length are not compared.
MAX_PASSWORD_LENGTH = 500

PAUSE_API_REQUEST = "api_request"

_HTTP_PATTERN = re.compile(r"([A-Z]{1,6}) (/\S*) (HTTP/1\.[0-9])")
_HEX_NONCE = re.compile(r"0x([0-9a-fA-F]+)")
_UINT64_MAX = 0xFFFFFFFFFFFFFFFF
_POLL_INTERVAL = 0.2


@dataclass
class LogOptions:
    """Runtime logging options changed through the API."""

    verbosity: int = 0


log_options = LogOptions()


def _password_block(text: str) -> bytes:
    return text.encode("utf-8")[:MAX_PASSWORD_LENGTH].ljust(MAX_PASSWORD_LENGTH, b"\0")


def _to_json_line(value: dict) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":")) + "\n"


class ApiConnection:
    """One client session: parses requests and produces replies."""

    def __init__(self, session_id: int, readonly: bool, password: str, farm: Any, pools: Any,
                 version: str) -> None:
        self.session_id = session_id
        self.readonly = readonly
        self._password = password or ""
        self._farm = farm
        self._pools = pools
        self._version = version
        self.authenticated = not self._password
        self.closing = False
        self._buffer = ""
        self._handlers: dict[str, Callable[[dict], Any]] = {
            "miner_getstat1": self._getstat1,
            "miner_getstatdetail": self._getstatdetail,
            "miner_shuffle": self._shuffle,
            "miner_ping": self._ping,
            "miner_restart": self._restart,
            "miner_reboot": self._reboot,
            "miner_getconnections": self._getconnections,
            "miner_addconnection": self._addconnection,
            "miner_setactiveconnection": self._setactiveconnection,
            "miner_removeconnection": self._removeconnection,
            "miner_getscramblerinfo": self._getscramblerinfo,
            "miner_setscramblerinfo": self._setscramblerinfo,
            "miner_pausegpu": self._pausegpu,
            "miner_setverbosity": self._setverbosity,
        }

    # ---- JSON-RPC ---------------------------------------------------------

    def process_request(self, request: Any) -> dict:
        """Answer one decoded JSON-RPC request."""
        if not isinstance(request, dict):
            raise TypeError("Request is not a JSON object")
        response: dict = {"jsonrpc": "2.0"}
        try:
            response["id"] = parse_request_id(request)
        except ApiError as err:
            response["id"] = None
            response["error"] = err.to_json()
            return response
        try:
            self._dispatch(request, response)
        except ApiError as err:
            response["error"] = err.to_json()
        return response

    def _dispatch(self, request: dict, response: dict) -> None:
        try:
            valid = get_string(request, "jsonrpc") == "2.0"
            method = get_string(request, "method") if valid else None
        except ApiError:
            valid = False
        if not valid:
            raise ApiError(INVALID_REQUEST, "Invalid Request")

        if not self.authenticated or method == "api_authorize":
            if method != "api_authorize":
                raise ApiError(FORBIDDEN, "Authorization needed")
            self._authorize(request)
            return

        log.info("API : Method %s requested", method)
        handler = self._handlers.get(method)
        if handler is None:
            raise ApiError(METHOD_NOT_FOUND, "Method not found")
        response["result"] = handler(request)

    def _authorize(self, request: dict) -> None:
        self.authenticated = False
        params = get_object(request, "params")
        supplied = get_string(params, "psw")
        if hmac.compare_digest(_password_block(supplied), _password_block(self._password)):
            self.authenticated = True
            return
        log.warning("API : Invalid password provided.")
        raise ApiError(UNAUTHORIZED, "Invalid password")

    def _write_params(self, request: dict) -> dict:
        check_write_access(self.readonly)
        return get_object(request, "params")

    def _getstat1(self, request: dict) -> Any:
        return miner_stat1(self._farm, self._pools, self._version)

    def _getstatdetail(self, request: dict) -> Any:
        return miner_stat_detail(self._farm, self._pools, self._version)

    def _shuffle(self, request: dict) -> bool:
        self._farm.shuffle()
        return True

    def _ping(self, request: dict) -> str:
        return "pong"

    def _restart(self, request: dict) -> bool:
        check_write_access(self.readonly)
        self._farm.restart_async()
        return True

    def _reboot(self, request: dict) -> Any:
        check_write_access(self.readonly)
        return self._farm.reboot(["api_miner_reboot"])

    def _getconnections(self, request: dict) -> Any:
        return self._pools.connections_json()

    def _addconnection(self, request: dict) -> bool:
        params = self._write_params(request)
        uri = get_string(params, "uri")
        try:
            self._pools.add_connection(uri)
        except Exception:
            raise ApiError(UNPROCESSABLE, f"Bad URI : {uri}") from None
        return True

    def _setactiveconnection(self, request: dict) -> bool:
        params = self._write_params(request)
        try:
            if "index" in params:
                target: Any = get_uint(params, "index")
            else:
                target = get_string(params, "URI")
        except ApiError:
            raise ApiError(UNPROCESSABLE, "Invalid index") from None
        try:
            self._pools.set_active_connection(target)
        except Exception as ex:
            raise ApiError(UNPROCESSABLE, str(ex)) from None
        return True

    def _removeconnection(self, request: dict) -> bool:
        params = self._write_params(request)
        index = get_uint(params, "index")
        try:
            self._pools.remove_connection(index)
        except Exception as ex:
            raise ApiError(UNPROCESSABLE, str(ex)) from None
        return True

    def _getscramblerinfo(self, request: dict) -> Any:
        return self._farm.nonce_scrambler_json()

    def _setscramblerinfo(self, request: dict) -> bool:
        params = self._write_params(request)
        nonce = self._farm.nonce_scrambler
        width = self._farm.segment_width
        provided = False

        if "noncescrambler" in params:
            provided = True
            raw = params["noncescrambler"]
            if isinstance(raw, str) and raw.startswith("0x"):
                match = _HEX_NONCE.match(raw)
                if match is None or int(match.group(1), 16) > _UINT64_MAX:
                    raise ApiError(UNPROCESSABLE, "Invalid nonce")
                nonce = int(match.group(1), 16)
            else:
                nonce = get_uint64(params, "noncescrambler")

        if "segmentwidth" in params:
            provided = True
            width = get_uint(params, "segmentwidth")

        if not provided:
            raise ApiError(INVALID_PARAMS, "Missing parameters")

        if width < 10:
            width = 10
        if width > 50:
            width = 40
        self._farm.nonce_scrambler = nonce
        self._farm.segment_width = width
        return True

    def _pausegpu(self, request: dict) -> bool:
        params = self._write_params(request)
        index = get_uint(params, "index")
        pause = get_bool(params, "pause")
        miner = self._farm.get_miner(index)
        if not miner:
            raise ApiError(UNPROCESSABLE, "Index out of bounds")
        if pause:
            miner.pause(PAUSE_API_REQUEST)
        else:
            miner.resume(PAUSE_API_REQUEST)
        return True

    def _setverbosity(self, request: dict) -> bool:
        params = self._write_params(request)
        verbosity = get_uint(params, "verbosity")
        if verbosity >= LOG_NEXT:
            raise ApiError(UNPROCESSABLE, f"Verbosity out of bounds (0-{LOG_NEXT - 1})")
        log.info("Setting verbosity level to %d", verbosity)
        log_options.verbosity = verbosity
        return True

    # ---- wire handling ----------------------------------------------------

    def handle_data(self, data: bytes | str) -> list[str]:
        """Consume received data and return the replies to send back.

        After an HTTP reply ``closing`` is set and the session should end.
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self._buffer += data
        if len(self._buffer) < 4:
            return []

        match = _HTTP_PATTERN.match(self._buffer)
        if match:
            self._buffer = ""
            self.closing = True
            return [self._http_reply(*match.groups())]

        replies = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            line = line.strip()
            if line:
                replies.append(_to_json_line(self._reply_to_line(line)))
        return replies

    def _reply_to_line(self, line: str) -> dict:
        try:
            message = json.loads(line)
        except json.JSONDecodeError as err:
            what = str(err).replace("\n", " ")
            log.warning("API : Got invalid Json message %s", what)
            return {
                "jsonrpc": "2.0",
                "id": None,
                "error": {"errorcode": "-32700", "message": f"Json parse error : {what}"},
            }
        try:
            return self.process_request(message)
        except Exception as ex:
            return {
                "jsonrpc": "2.0",
                "id": None,
                "error": {"errorcode": "500", "message": str(ex)},
            }

    def _http_response(self, http_ver: str, status: str, content_type: str, body: str) -> str:
        return (
            f"{http_ver} {status}\r\n"
            f"Server: {self._version}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body.encode('utf-8'))}\r\n\r\n"
            f"{body}\r\n"
        )

    def _http_reply(self, method: str, path: str, http_ver: str) -> str:
        if method != "GET":
            return self._http_response(
                http_ver, "405 Method not allowed", "text/plain", f"Method {method} not allowed"
            )
        if path not in ("/", "/getstat1"):
            return self._http_response(
                http_ver,
                "404 Not Found",
                "text/plain",
                f"The requested resource {path} not found on this server",
            )
        try:
            body = http_stat_page(miner_stat_detail(self._farm, self._pools, self._version))
        except Exception as ex:
            return self._http_response(
                http_ver, "500 Internal Server Error", "text/plain", f"Internal error : {ex}"
            )
        return self._http_response(http_ver, "200 Ok Error", "text/html; charset=utf-8", body)


class ApiServer:
    """TCP listener that serves :class:`ApiConnection` sessions in threads.

    A negative port number makes the server read-only on its absolute value.
    """

    def __init__(self, address: str, port: int, password: str, farm: Any, pools: Any,
                 version: str) -> None:
        self.address = address
        self.readonly = port < 0
        self.port = abs(port)
        self._password = password or ""
        self._farm = farm
        self._pools = pools
        self._version = version
        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._running = False
        self._last_session_id = 0
        self._lock = threading.Lock()
        self._sessions: dict[int, tuple[ApiConnection, threading.Thread]] = {}

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Bind and start accepting; a zero port leaves the server off."""
        if self.port == 0:
            return
        ip = ipaddress.ip_address(self.address)
        family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET
        listener = socket.socket(family, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((str(ip), self.port))
            listener.listen(64)
        except OSError:
            listener.close()
            log.warning("Could not start API server on port: %d", self.port)
            log.warning("Ensure port is not in use by another service")
            return
        listener.settimeout(_POLL_INTERVAL)
        log.info(
            "Api server listening on port %d%s",
            self.port,
            ". Authentication needed." if self._password else ".",
        )
        self._listener = listener
        self._stop.clear()
        self._running = True
        self._accept_thread = threading.Thread(target=self._accept_loop, name="api", daemon=True)
        self._accept_thread.start()

    def stop(self) -> None:
        """Stop listening and end every open session."""
        if not self._running:
            return
        self._stop.set()
        if self._accept_thread is not None:
            self._accept_thread.join()
        if self._listener is not None:
            self._listener.close()
        with self._lock:
            threads = [thread for _, thread in self._sessions.values()]
        for thread in threads:
            thread.join()
        with self._lock:
            self._sessions.clear()
        self._running = False

    def _accept_loop(self) -> None:
        assert self._listener is not None
        while not self._stop.is_set():
            try:
                client, peer = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            client.settimeout(_POLL_INTERVAL)
            self._last_session_id += 1
            connection = ApiConnection(
                self._last_session_id, self.readonly, self._password,
                self._farm, self._pools, self._version,
            )
            thread = threading.Thread(
                target=self._serve, args=(connection, client), name="api-session", daemon=True
            )
            with self._lock:
                self._sessions[connection.session_id] = (connection, thread)
            log.info("New API session from %s", peer)
            thread.start()

    def _serve(self, connection: ApiConnection, client: socket.socket) -> None:
        try:
            with client:
                while not self._stop.is_set():
                    try:
                        data = client.recv(4096)
                    except socket.timeout:
                        continue
                    except OSError:
                        break
                    if not data:
                        break
                    try:
                        for reply in connection.handle_data(data):
                            client.sendall(reply.encode("utf-8"))
                    except OSError:
                        break
                    if connection.closing:
                        try:
                            client.shutdown(socket.SHUT_RDWR)
                        except OSError:
                            pass
                        break
        finally:
            if not self._stop.is_set():
                with self._lock:
                    self._sessions.pop(connection.session_id, None)