import typer, getpass, pathlib, sys, json
from contextlib import contextmanager
from typing import Optional, Tuple

from . import vault as ops
from .doctor import Severity, VaultDoctor
from .errors import Ambiguous, AuthFailed, RemoteConflict, VaultError
from .logging import get_logger
from .models import FolderEntry, VaultSettings
from .session import Session, SessionStore, authenticate, bootstrap, change_password

app = typer.Typer(no_args_is_help=True)
shared_app = typer.Typer(no_args_is_help=True, help="Manage shared files")
settings_app = typer.Typer(no_args_is_help=True, help="Show or change vault settings")
app.add_typer(shared_app, name="shared")
app.add_typer(settings_app, name="settings")

LOG = get_logger()

USER_OPTION = typer.Option(None, "--user", "-u", help="Authenticate statelessly as this user")

SETTING_KEYS = {
    "author-name": "commit_author_name",
    "author-email": "commit_author_email",
    "commit-message": "commit_message",
    "file-id-length": "file_id_length",
    "share-id-length": "share_id_length",
}


def _log_error(event: str, message: str, **details):
    LOG.error(event, message=message, **details)


def ask_pw(prompt="Vault password: ") -> str:
    """Prompt the user for a password using getpass."""
    return getpass.getpass(prompt)


def ask_new_password(prompt="New vault password: ") -> str:
    """Prompt the user twice for a new password and ensure the entries match."""
    first = ask_pw(prompt)
    second = ask_pw("Confirm password: ")
    if first != second:
        typer.echo("✖ Passwords did not match. Aborting.")
        raise typer.Exit(1)
    if not first:
        typer.echo("✖ Password cannot be empty.")
        raise typer.Exit(1)
    return first


@contextmanager
def _failures(event: str, **details):
    """Turn library errors into a logged event, a one-line message and exit code 1."""
    try:
        yield
    except AuthFailed as exc:
        _log_error(event, message="Authentication failed", **details)
        typer.echo(f"✖ Authentication failed: {exc}")
        raise typer.Exit(1)
    except Ambiguous as exc:
        _log_error(event, message="Ambiguous match", **{**details, "query": exc.query})
        typer.echo(f"Multiple files match '{exc.query}':")
        for i, m in enumerate(exc.matches, start=1):
            typer.echo(f"  {i}. {m.file_name} (ref: {m.reference})")
        typer.echo("✖ Please be more specific.")
        raise typer.Exit(1)
    except RemoteConflict as exc:
        _log_error(event, message="Push rejected", **details)
        typer.echo(f"✖ {exc}")
        raise typer.Exit(1)
    except (VaultError, OSError, ValueError) as exc:
        _log_error(event, message=type(exc).__name__, error=str(exc), **details)
        typer.echo(f"✖ {exc}")
        raise typer.Exit(1)


def _open_session(user: Optional[str]) -> Tuple[Session, bool]:
    """Return (session, persistent): the cached session, or a fresh stateless one."""
    store = SessionStore()
    if user is None:
        with _failures("session_load_failed"):
            session = store.load()
        if session is not None:
            return session, True
        user = typer.prompt("Username")
    pw = ask_pw()
    with _failures("auth_failed", username=user):
        return authenticate(user, pw), False


def _persist(session: Session, persistent: bool):
    if persistent:
        SessionStore().save(session)


@app.callback()
def configure(debug: bool = typer.Option(False, "--debug", help="Log to stderr instead of the log file")):
    """Client-side encrypted file vault stored in a git repository."""
    get_logger(debug)


@app.command()
def setup(
    username: str = typer.Option(..., "--user", "-u", prompt="Username"),
    key: str = typer.Option(..., "--key", prompt="Path to SSH private key (deploy key with write access)"),
    yes: bool = typer.Option(False, "--yes", help="Skip the overwrite confirmation"),
):
    """Initialize a vault: encrypt the deploy key and force-push a fresh history."""
    key_path = pathlib.Path(key).expanduser()
    if not key_path.is_file():
        typer.echo(f"✖ SSH key file not found at: {key_path}")
        raise typer.Exit(1)
    if not yes:
        typer.echo("⚠ WARNING: setup replaces everything in the remote vault repository.")
        if not typer.confirm("Proceed?", default=False):
            typer.echo("↷ Aborted.")
            raise typer.Exit(0)
    pw = ask_new_password("Create a vault password: ")
    with _failures("vault_setup_failed", username=username):
        session = bootstrap(username, key_path.read_bytes(), pw)
    session.close()
    typer.echo("✔ Setup complete. Run 'gitvault connect' to create a local session.")


@app.command()
def connect(username: str = typer.Argument(None)):
    """Authenticate and cache the decrypted session locally."""
    if username is None:
        username = typer.prompt("Username")
    pw = ask_pw()
    with _failures("connect_failed", username=username):
        session = authenticate(username, pw)
        SessionStore().save(session)
    typer.echo(f"✔ Connected as {username}.")


@app.command()
def disconnect():
    """Forget the cached session."""
    if SessionStore().clear():
        typer.echo("✔ Logged out.")
    else:
        typer.echo("No active session.")


@app.command()
def upload(local_path: str, vault_path: str, user: Optional[str] = USER_OPTION):
    """Encrypt a file (or a whole directory) into the vault."""
    session, persistent = _open_session(user)
    src = pathlib.Path(local_path)
    with _failures("upload_failed", path=vault_path):
        if src.is_dir():
            uploaded = ops.upload_directory(session, src, vault_path)
            typer.echo(f"✔ Uploaded {len(uploaded)} files to {vault_path}")
        else:
            entry = ops.upload(session, src, vault_path)
            typer.echo(f"✔ Uploaded {src} -> {vault_path} ({entry.storage_id})")
    _persist(session, persistent)


@app.command()
def download(
    vault_path: str = typer.Argument(None),
    local_path: str = typer.Argument(None),
    shared: str = typer.Option(None, "--shared", help="Share string username:reference:password[:name]"),
    user: Optional[str] = USER_OPTION,
):
    """Decrypt a vault file to a local path.

    With --shared no vault path is needed; a single positional argument is
    taken as the destination.
    """
    if shared:
        with _failures("shared_download_failed"):
            out = ops.download_shared(shared, local_path or vault_path)
        typer.echo(f"✔ Shared file saved to {out}")
        return
    if not vault_path:
        typer.echo("✖ Missing vault path (or pass --shared).")
        raise typer.Exit(1)
    session, _ = _open_session(user)
    with _failures("download_failed", path=vault_path):
        out = ops.download(session, vault_path, local_path)
    typer.echo(f"✔ Downloaded {vault_path} -> {out}")


@app.command()
def read(
    vault_path: str = typer.Argument(None),
    shared: str = typer.Option(None, "--shared", help="Share string username:reference:password[:name]"),
    user: Optional[str] = USER_OPTION,
):
    """Print decrypted file contents to stdout."""
    if shared:
        with _failures("shared_read_failed"):
            data = ops.read_shared(shared)
    elif not vault_path:
        typer.echo("✖ Missing vault path (or pass --shared).")
        raise typer.Exit(1)
    else:
        session, _ = _open_session(user)
        with _failures("read_failed", path=vault_path):
            data = ops.read_file(session, vault_path)
    sys.stdout.buffer.write(data)
    sys.stdout.flush()


@app.command()
def rm(
    vault_path: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask before deleting folders"),
    user: Optional[str] = USER_OPTION,
):
    """Delete a file or, recursively, a folder."""
    session, persistent = _open_session(user)
    with _failures("rm_failed", path=vault_path):
        entry = session.index.find(vault_path)
        if isinstance(entry, FolderEntry) and not yes:
            if not typer.confirm(f"Delete folder '{vault_path}' and everything in it?", default=False):
                typer.echo("↷ Aborted.")
                raise typer.Exit(0)
        removed = ops.delete(session, vault_path)
    _persist(session, persistent)
    typer.echo(f"✔ Removed {vault_path} ({len(removed)} objects)")


@app.command("ls")
def ls_cmd(path: str = typer.Argument(""), user: Optional[str] = USER_OPTION):
    """List a vault folder."""
    session, _ = _open_session(user)
    with _failures("ls_failed", path=path):
        children = session.index.list(path)
    if not children:
        typer.echo("Directory is empty.")
        return
    for name, entry in children:
        if isinstance(entry, FolderEntry):
            typer.echo(f"{name}/\t[DIR]\t-")
        else:
            typer.echo(f"{name}\t[FILE]\t{entry.storage_id}")


@app.command()
def search(query: str, user: Optional[str] = USER_OPTION):
    """Find vault paths containing QUERY (case-insensitive)."""
    session, _ = _open_session(user)
    hits = session.index.search(query)
    if not hits:
        typer.echo("No matches found.")
        return
    for path, entry in hits:
        if isinstance(entry, FolderEntry):
            typer.echo(f"{path}/\t[DIR]\t-")
        else:
            typer.echo(f"{path}\t[FILE]\t{entry.storage_id}")


@app.command()
def purge(yes: bool = typer.Option(False, "--yes"), user: Optional[str] = USER_OPTION):
    """Wipe the remote vault and its history."""
    session, persistent = _open_session(user)
    if not yes:
        typer.echo("⚠ WARNING: this wipes all remote data and history, including the encrypted key.")
        if not typer.confirm("Confirm PURGE?", default=False):
            typer.echo("↷ Aborted.")
            raise typer.Exit(0)
    with _failures("purge_failed", username=session.username):
        ops.purge(session)
    if persistent:
        SessionStore().clear()
    typer.echo("✔ Remote vault has been wiped. Run 'gitvault setup' to start over.")


@app.command()
def share(vault_path: str, user: Optional[str] = USER_OPTION):
    """Publish a file under an independent share password."""
    session, persistent = _open_session(user)
    share_pw = ask_new_password("Share password: ")
    with _failures("share_failed", path=vault_path):
        share_string = ops.share(session, vault_path, share_pw)
    _persist(session, persistent)
    typer.echo("✔ File shared. Give this string to the recipient:")
    typer.echo(str(share_string))
    typer.echo(f"\nRecipient can download with:\n  gitvault download --shared \"{share_string}\"")


@app.command()
def passwd(user: Optional[str] = USER_OPTION):
    """Change the vault password and re-encrypt every key in one commit."""
    session, persistent = _open_session(user)
    current = ask_pw("Current vault password: ")
    new = ask_new_password()
    with _failures("passwd_failed", username=session.username):
        change_password(session, new, current_password=current)
    _persist(session, persistent)
    typer.echo("✔ Vault password changed.")


@app.command()
def info(vault_path: str = typer.Argument(None), user: Optional[str] = USER_OPTION):
    """Show vault statistics, or details of one file."""
    session, _ = _open_session(user)
    if vault_path:
        with _failures("info_failed", path=vault_path):
            fi = ops.file_info(session, vault_path)
        typer.echo(f"Vault Path:     {fi.vault_path}")
        typer.echo(f"Storage ID:     {fi.storage_id}")
        typer.echo(f"Encrypted Size: {fi.encrypted_size} bytes")
        return
    vi = ops.vault_info(session)
    typer.echo(f"User:    {vi.username}")
    typer.echo(f"Files:   {vi.files}")
    typer.echo(f"Folders: {vi.folders}")
    typer.echo(f"Shared:  {vi.shared}")
    _print_settings(vi.settings)


@app.command()
def doctor(
    prune: bool = typer.Option(False, "--prune", help="Delete orphaned objects from the remote"),
    as_json: bool = typer.Option(False, "--json", help="Output results as JSON"),
    user: Optional[str] = USER_OPTION,
):
    """Check the remote tree against the vault and shared indexes."""
    session, _ = _open_session(user)
    doc = VaultDoctor(session)
    with _failures("doctor_failed", username=session.username):
        results = doc.run()
        pruned = doc.prune() if prune else []
    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        prefix = {Severity.OK: "✔", Severity.WARNING: "⚠", Severity.ERROR: "✖"}
        for r in results:
            loc = f" ({r.path})" if r.path else ""
            typer.echo(f"{prefix[r.severity]} {r.id}: {r.message}{loc}")
    if pruned:
        typer.echo(f"✔ Pruned {len(pruned)} orphaned objects")
    if any(r.severity == Severity.ERROR for r in results):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# shared
# ---------------------------------------------------------------------------

@shared_app.command("ls")
def shared_ls(query: str = typer.Argument(None), user: Optional[str] = USER_OPTION):
    """List shared files, or search them by name."""
    session, _ = _open_session(user)
    if query is None:
        entries = session.shared_index.list()
        if not entries:
            typer.echo("No shared files.")
            return
        for e in entries:
            typer.echo(f"{e.reference}\t{e.original_path}\t{e.shared_at:%Y-%m-%d %H:%M}")
        return
    matches = session.shared_index.find_by_name(query)
    if not matches:
        typer.echo(f"✖ No shared files found matching '{query}'")
        raise typer.Exit(1)
    for m in matches:
        typer.echo(f"{m.reference}\t{m.original_path}\t{m.kind} match")


@shared_app.command("info")
def shared_info(reference: str, user: Optional[str] = USER_OPTION):
    """Show a shared file and its share string."""
    session, _ = _open_session(user)
    with _failures("shared_info_failed", reference=reference):
        entry = session.shared_index.resolve(reference)
        share_string = ops.share_string_for(session, entry.reference)
    typer.echo(f"Reference:    {entry.reference}")
    typer.echo(f"Vault Path:   {entry.original_path}")
    typer.echo(f"Shared At:    {entry.shared_at:%Y-%m-%d %H:%M:%S}")
    typer.echo(f"Share String: {share_string}")


@shared_app.command("revoke")
def shared_revoke(
    query: str,
    yes: bool = typer.Option(False, "--yes", "-y"),
    user: Optional[str] = USER_OPTION,
):
    """Revoke a share by reference or file name."""
    session, persistent = _open_session(user)
    with _failures("revoke_failed", query=query):
        entry = session.shared_index.resolve(query)
        if not yes and not typer.confirm(f"Revoke shared file '{entry.name}' ({entry.reference})?", default=False):
            typer.echo("Cancelled.")
            raise typer.Exit(0)
        ops.revoke(session, entry.reference)
    _persist(session, persistent)
    typer.echo(f"✔ Shared file '{entry.name}' revoked.")


# ---------------------------------------------------------------------------
# settings
# ---------------------------------------------------------------------------

def _print_settings(settings: VaultSettings):
    for flag, field_name in SETTING_KEYS.items():
        typer.echo(f"{flag:<16} {getattr(settings, field_name)}")


@settings_app.command("show")
def settings_show(user: Optional[str] = USER_OPTION):
    session, _ = _open_session(user)
    _print_settings(session.settings)


@settings_app.command("set")
def settings_set(key: str, value: str, user: Optional[str] = USER_OPTION):
    """Change one setting (author-name, author-email, commit-message, file-id-length, share-id-length)."""
    field_name = SETTING_KEYS.get(key)
    if field_name is None:
        typer.echo(f"✖ Unknown setting: {key}")
        typer.echo(f"Available keys: {', '.join(SETTING_KEYS)}")
        raise typer.Exit(1)
    session, persistent = _open_session(user)
    with _failures("settings_failed", key=key):
        ops.update_settings(session, **{field_name: value})
    _persist(session, persistent)
    typer.echo(f"✔ Setting '{key}' updated to '{value}'")
