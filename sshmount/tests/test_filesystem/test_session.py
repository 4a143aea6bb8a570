import errno
import logging
import os
import socket
import threading
import time
from unittest import mock

import paramiko
import pytest

from sshmount.config import ConnectionConfig
from sshmount.filesystem.common import MountContext
from sshmount.filesystem.session import (
    ConnectionFaultState,
    RemoteSession,
    SessionManager,
    SftpSession,
)


@pytest.fixture
def context():
    return MountContext(user="user", host="example.com", password="secret")


def test_remote_session_base():
    session = RemoteSession()

    with pytest.raises(NotImplementedError):
        session.stat("/")

    with pytest.raises(NotImplementedError):
        session.set_times("/", 0, 0)

    with pytest.raises(NotImplementedError):
        session.truncate("/", 0)


def test_connect(context):
    factory = mock.Mock()

    manager = SessionManager(context, factory)

    with pytest.raises(ConnectionError):
        manager.session

    assert manager.connect()
    assert manager.session is factory.return_value

    factory.assert_called_once_with(context)


def test_connect_failure(context, caplog):
    factory = mock.Mock(side_effect=Exception("connection refused"))

    manager = SessionManager(context, factory)

    assert not manager.connect()
    assert "failed to connect to example.com:22: connection refused" in caplog.text

    with pytest.raises(ConnectionError):
        manager.session


def test_disconnect(context):
    factory = mock.Mock()

    manager = SessionManager(context, factory)
    manager.connect()
    manager.disconnect()

    factory.return_value.disconnect.assert_called_once()

    with pytest.raises(ConnectionError):
        manager.session

    # Disconnecting twice does nothing
    manager.disconnect()
    factory.return_value.disconnect.assert_called_once()


def test_reconnect_after_disconnect(context):
    factory = mock.Mock()

    manager = SessionManager(context, factory)
    manager.connect()
    manager.mark_faulted()
    manager.disconnect()

    assert not manager.faulted
    assert not manager.reconnect()
    assert not manager.repair()

    # Late failures of the closed session are not recorded either
    manager.mark_faulted()
    assert not manager.faulted

    factory.assert_called_once()
    assert manager.retry_count == 0


def test_disconnect_failure(context, caplog):
    caplog.set_level(logging.WARNING, logger="sshmount")

    factory = mock.Mock()
    factory.return_value.disconnect.side_effect = OSError("socket closed")

    manager = SessionManager(context, factory)
    manager.connect()
    manager.disconnect()

    assert "failed to disconnect: socket closed" in caplog.text


def test_reconnect_without_fault(context):
    factory = mock.Mock()

    manager = SessionManager(context, factory)
    manager.connect()

    assert manager.reconnect()
    assert manager.repair()

    assert factory.call_count == 1
    assert manager.retry_count == 0


def test_reconnect(context):
    first = mock.Mock()
    second = mock.Mock()

    manager = SessionManager(context, mock.Mock(side_effect=[first, second]))
    manager.connect()

    manager.mark_faulted()
    assert manager.faulted

    assert manager.reconnect()

    assert not manager.faulted
    assert manager.session is second
    assert manager.retry_count == 1

    first.disconnect.assert_called_once()


def test_reconnect_failure(context):
    first = mock.Mock()
    third = mock.Mock()

    factory = mock.Mock(side_effect=[first, Exception("host unreachable"), third])

    manager = SessionManager(context, factory)
    manager.connect()

    manager.mark_faulted(first)
    assert not manager.reconnect()

    assert manager.faulted
    assert manager.retry_count == 1

    # The next operation tries again
    assert manager.repair()

    assert not manager.faulted
    assert manager.session is third
    assert manager.retry_count == 2


def test_reconnect_disconnect_failure(context, caplog):
    caplog.set_level(logging.WARNING, logger="sshmount")

    first = mock.Mock()
    first.disconnect.side_effect = EOFError("already closed")
    second = mock.Mock()

    manager = SessionManager(context, mock.Mock(side_effect=[first, second]))
    manager.connect()

    manager.mark_faulted(first)

    assert manager.reconnect()
    assert manager.session is second
    assert "failed to disconnect: already closed" in caplog.text


def test_stale_fault_ignored(context):
    first = mock.Mock()
    second = mock.Mock()

    manager = SessionManager(context, mock.Mock(side_effect=[first, second]))
    manager.connect()

    manager.mark_faulted(first)
    manager.reconnect()

    manager.mark_faulted(first)

    assert not manager.faulted
    assert manager.session is second


def test_mark_faulted_idempotent(context):
    manager = SessionManager(context, mock.Mock())
    manager.connect()

    manager.mark_faulted()
    manager.mark_faulted()
    manager.mark_faulted(manager.session)

    assert manager.faulted

    manager.reconnect()

    assert manager.retry_count == 1


def test_shared_fault_state(context):
    fault_state = ConnectionFaultState()

    manager = SessionManager(context, mock.Mock(), fault_state)
    manager.connect()
    manager.mark_faulted()

    assert fault_state.faulted


def test_single_flight_reconnect(context):
    sessions = []

    def slow_factory(ctx):
        time.sleep(0.05)
        session = mock.Mock()
        sessions.append(session)
        return session

    manager = SessionManager(context, slow_factory)
    manager.connect()

    failed_session = manager.session

    thread_count = 8
    barrier = threading.Barrier(thread_count)
    results = []

    def fail_and_reconnect():
        barrier.wait()

        manager.mark_faulted(failed_session)
        results.append(manager.reconnect())

    threads = [threading.Thread(target=fail_and_reconnect) for _ in range(thread_count)]

    for t in threads:
        t.start()

    for t in threads:
        t.join()

    assert results == [True] * thread_count
    assert len(sessions) == 2
    assert manager.retry_count == 1
    assert manager.session is sessions[1]
    assert not manager.faulted


def test_mark_faulted_does_not_wait_for_reconnect(context):
    connecting = threading.Event()
    release = threading.Event()

    def blocking_factory(ctx):
        if factory_calls:
            connecting.set()
            release.wait(5.0)

        factory_calls.append(ctx)
        return mock.Mock()

    factory_calls = []

    manager = SessionManager(context, blocking_factory)
    manager.connect()
    manager.mark_faulted()

    t = threading.Thread(target=manager.reconnect)
    t.start()

    try:
        assert connecting.wait(5.0)

        # Returns while the reconnect is still blocked
        manager.mark_faulted()
    finally:
        release.set()
        t.join()

    assert manager.retry_count == 1


#
# SftpSession
#


@pytest.fixture
def ssh_client():
    with mock.patch("sshmount.filesystem.session.paramiko.SSHClient") as client_type:
        yield client_type.return_value


def test_sftp_connect_password(context, ssh_client):
    session = SftpSession.connect(context, ConnectionConfig())

    kwargs = ssh_client.connect.call_args[1]

    assert kwargs["hostname"] == "example.com"
    assert kwargs["port"] == 22
    assert kwargs["username"] == "user"
    assert kwargs["password"] == "secret"
    assert "key_filename" not in kwargs
    assert not kwargs["allow_agent"]
    assert not kwargs["look_for_keys"]

    ssh_client.open_sftp.assert_called_once()
    assert isinstance(session, SftpSession)


def test_sftp_connect_identity(ssh_client):
    context = MountContext(
        user="user",
        host="example.com",
        port=2222,
        identity="/home/user/.ssh/id_ed25519",
        passphrase="words",
    )

    SftpSession.connect(context, ConnectionConfig(timeout=3.0))

    kwargs = ssh_client.connect.call_args[1]

    assert kwargs["port"] == 2222
    assert kwargs["timeout"] == 3.0
    assert kwargs["key_filename"] == "/home/user/.ssh/id_ed25519"
    assert kwargs["passphrase"] == "words"
    assert "password" not in kwargs


def test_sftp_connect_empty_password_uses_identity(ssh_client):
    context = MountContext(
        user="user", host="example.com", password="", identity="/key"
    )

    SftpSession.connect(context, ConnectionConfig())

    assert ssh_client.connect.call_args[1]["key_filename"] == "/key"


def test_sftp_host_key_policy(context, ssh_client, tmp_path):
    SftpSession.connect(context, ConnectionConfig())

    policy = ssh_client.set_missing_host_key_policy.call_args[0][0]
    assert isinstance(policy, paramiko.AutoAddPolicy)

    known_hosts = tmp_path / "known_hosts"
    known_hosts.touch()

    SftpSession.connect(
        context, ConnectionConfig(strict_host_keys=True, known_hosts=str(known_hosts))
    )

    policy = ssh_client.set_missing_host_key_policy.call_args[0][0]
    assert isinstance(policy, paramiko.RejectPolicy)
    ssh_client.load_host_keys.assert_called_once_with(str(known_hosts))


def test_sftp_connect_failure_closes_client(context, ssh_client):
    ssh_client.connect.side_effect = paramiko.AuthenticationException("denied")

    with pytest.raises(paramiko.AuthenticationException):
        SftpSession.connect(context, ConnectionConfig())

    ssh_client.close.assert_called_once()


@pytest.fixture
def sftp():
    return mock.Mock()


@pytest.fixture
def transport():
    return mock.Mock()


@pytest.fixture
def sftp_session(sftp, transport):
    client = mock.Mock()
    client.get_transport.return_value = transport
    transport.is_active.return_value = True

    return SftpSession(client, sftp)


def _sftp_attributes(mode, size=0, filename=None):
    attrs = paramiko.SFTPAttributes()
    attrs.st_mode = mode
    attrs.st_size = size
    attrs.st_atime = 1000
    attrs.st_mtime = 2000

    if filename is not None:
        attrs.filename = filename

    return attrs


def test_sftp_stat(sftp_session, sftp):
    sftp.stat.return_value = _sftp_attributes(0o100644, size=12)

    attrs = sftp_session.stat("/a.txt")

    assert not attrs.is_directory
    assert attrs.size == 12
    assert attrs.atime == 1000
    assert attrs.mtime == 2000

    sftp.stat.return_value = _sftp_attributes(0o040755)
    assert sftp_session.stat("/dir").is_directory


def test_sftp_list_directory(sftp_session, sftp):
    sftp.listdir_attr.return_value = [
        _sftp_attributes(0o040755, filename="."),
        _sftp_attributes(0o040755, filename=".."),
        _sftp_attributes(0o040755, filename="docs"),
        _sftp_attributes(0o100644, size=3, filename="a.txt"),
    ]

    entries = sftp_session.list_directory("/")

    assert [entry.name for entry in entries] == ["docs", "a.txt"]
    assert entries[0].attributes.is_directory
    assert entries[1].attributes.size == 3


def test_sftp_not_found_passes_through(sftp_session, sftp):
    sftp.stat.side_effect = IOError(errno.ENOENT, "No such file")

    with pytest.raises(FileNotFoundError):
        sftp_session.stat("/nonexistent")


def test_sftp_permission_denied_passes_through(sftp_session, sftp):
    sftp.remove.side_effect = IOError(errno.EACCES, "Permission denied")

    with pytest.raises(PermissionError):
        sftp_session.delete("/root/file")


@pytest.mark.parametrize(
    "error",
    [
        paramiko.SSHException("server closed"),
        EOFError(),
        socket.timeout(),
        ConnectionResetError(),
    ],
)
def test_sftp_connection_errors(sftp_session, sftp, error):
    sftp.stat.side_effect = error

    with pytest.raises(ConnectionError):
        sftp_session.stat("/")


def test_sftp_socket_error_on_dead_transport(sftp_session, sftp, transport):
    sftp.stat.side_effect = OSError("Socket is closed")

    with pytest.raises(OSError) as e:
        sftp_session.stat("/")

    assert not isinstance(e.value, ConnectionError)

    transport.is_active.return_value = False

    with pytest.raises(ConnectionError):
        sftp_session.stat("/")


def test_sftp_generic_failure(sftp_session, sftp):
    sftp.rmdir.side_effect = IOError("Failure")

    with pytest.raises(OSError) as e:
        sftp_session.delete_directory("/full")

    assert not isinstance(e.value, ConnectionError)


def test_sftp_read_stream(sftp_session, sftp):
    handle = sftp.open.return_value
    handle.read.return_value = b"abc"
    handle.tell.return_value = 5

    with sftp_session.open_read("/a.txt") as stream:
        assert stream.seek(5) == 5
        assert stream.read(3) == b"abc"

    sftp.open.assert_called_once_with("/a.txt", "rb")
    handle.seek.assert_called_once_with(5, os.SEEK_SET)
    handle.close.assert_called_once()


def test_sftp_write_stream(sftp_session, sftp):
    handle = sftp.open.return_value

    with sftp_session.open_write("/a.txt") as stream:
        assert stream.write(b"data") == 4

    sftp.open.assert_called_once_with("/a.txt", "r+b")
    handle.write.assert_called_once_with(b"data")


def test_sftp_stream_connection_error(sftp_session, sftp):
    sftp.open.return_value.read.side_effect = EOFError()

    stream = sftp_session.open_read("/a.txt")

    with pytest.raises(ConnectionError):
        stream.read(10)


def test_sftp_create_empty(sftp_session, sftp):
    sftp_session.create_empty("/new.txt")

    sftp.open.assert_called_once_with("/new.txt", "wb")
    sftp.open.return_value.close.assert_called_once()


def test_sftp_rename(sftp_session, sftp):
    sftp_session.rename("/a", "/b")
    sftp.rename.assert_called_once_with("/a", "/b")

    sftp_session.rename("/a", "/b", overwrite=True)
    sftp.posix_rename.assert_called_once_with("/a", "/b")
    sftp.remove.assert_not_called()


def test_sftp_rename_without_posix_rename(sftp_session, sftp):
    sftp.posix_rename.side_effect = IOError("Operation unsupported")

    sftp_session.rename("/a", "/b", overwrite=True)

    sftp.remove.assert_called_once_with("/b")
    sftp.rename.assert_called_once_with("/a", "/b")


def test_sftp_rename_without_posix_rename_new_target(sftp_session, sftp):
    sftp.posix_rename.side_effect = IOError("Operation unsupported")
    sftp.remove.side_effect = IOError(errno.ENOENT, "No such file")

    sftp_session.rename("/a", "/b", overwrite=True)

    sftp.rename.assert_called_once_with("/a", "/b")


def test_sftp_rename_failure(sftp_session, sftp):
    sftp.posix_rename.side_effect = IOError("Failure")

    with pytest.raises(OSError):
        sftp_session.rename("/a", "/b", overwrite=True)

    sftp.remove.assert_not_called()
    sftp.rename.assert_not_called()

    sftp.posix_rename.side_effect = IOError(errno.EACCES, "Permission denied")

    with pytest.raises(PermissionError):
        sftp_session.rename("/a", "/b", overwrite=True)

    sftp.rename.assert_not_called()


def test_sftp_mutators(sftp_session, sftp):
    sftp_session.set_times("/a", 1.0, 2.0)
    sftp.utime.assert_called_once_with("/a", (1.0, 2.0))

    sftp_session.truncate("/a", 10)
    sftp.truncate.assert_called_once_with("/a", 10)

    sftp_session.create_directory("/d")
    sftp.mkdir.assert_called_once_with("/d")


def test_sftp_disconnect(sftp_session, sftp):
    sftp_session.disconnect()

    sftp.close.assert_called_once()
    sftp_session._client.close.assert_called_once()
