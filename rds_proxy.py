#!/usr/bin/env python3
"""rds_proxy.py

Makes a tunnel to an RDS database via a bastion host in a private network,
using an SSH tunnel carried over the SSM Session Manager.
- Bastion looked up by Name tag, database by instance identifier (boto3)
- Temporary RSA key pushed through EC2 Instance Connect (valid ~60 seconds)
- ssh master with a control socket forwards localhost:PORT -> RDS endpoint
- Press any key to close the tunnel; the key files are removed on exit

Prereqs:
  - Python 3.8+ with boto3, botocore, rich
    pip3 install boto3 botocore rich
  - AWS CLI installed and configured (profile or environment credentials)
  - session-manager-plugin installed (used by aws ssm start-session)
    https://docs.aws.amazon.com/systems-manager/latest/userguide/session-manager-working-with-install-plugin.html
  - OpenSSH client (ssh, ssh-keygen)

USAGE:
  rds-proxy -d my-database -j my-bastion [-l 7432] [-r]
"""

from __future__ import annotations
import argparse
import contextlib
import os
import random
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

import boto3
import botocore.exceptions
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

console = Console()
HOME = Path.home()
# Temporary SSH keys and control sockets live here
KEY_DIR = HOME / ".ssh" / "aws-tools" / "ssm-tunnel"
KEY_BASENAME = "ssm-bastion-key"

# Defaults
DEFAULT_LOCAL_PORT = 7432
RANDOM_PORT_MIN = 2000
RANDOM_PORT_MAX = 65000
DEFAULT_OS_USER = "ec2-user"
SSM_DOCUMENT = "AWS-StartSSHSession"
KEY_VALIDITY_SECONDS = 60
SOCKET_CHECK_TIMEOUT = 10

SSM_PLUGIN = "session-manager-plugin"
REQUIRED_TOOLS = (SSM_PLUGIN, "aws", "ssh", "ssh-keygen")
PLUGIN_HELP = (
    "Please install the session manager plugin\n"
    "See instructions at: https://docs.aws.amazon.com/systems-manager/latest/userguide/"
    "session-manager-working-with-install-plugin.html"
)

DESCRIPTION = (
    "Makes a tunnel to RDS database via a bastion host in private network, "
    "using SSH tunnel via SSM service. "
    f"By default binds local port {DEFAULT_LOCAL_PORT}, use -r to pick a random port."
)

# ---------------- errors ----------------
class RdsProxyError(Exception):
    """Base error; ``exit_code`` is what the process exits with."""
    exit_code = 1

class NotFoundError(RdsProxyError):
    pass

class PermissionDeniedError(RdsProxyError):
    pass

class TransientNetworkError(RdsProxyError):
    pass

class CommandTimeoutError(RdsProxyError):
    pass

class TunnelInUseError(RdsProxyError):
    pass

class MissingDependencyError(RdsProxyError):
    pass

class CommandError(RdsProxyError):
    """A local executable exited non-zero; its status becomes ours."""

    def __init__(self, cmd: List[str], returncode: int, stderr: Optional[str] = None):
        msg = f"Command failed ({returncode}): {shlex.join(cmd)}"
        if stderr:
            msg += f"\nstderr:{stderr.strip()}"
        super().__init__(msg)
        self.cmd = cmd
        self.returncode = returncode
        # killed by a signal: report 128+N like a shell
        self.exit_code = 128 - returncode if returncode < 0 else returncode

NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed",
    "DBInstanceNotFound", "DBInstanceNotFoundFault", "EC2InstanceNotFoundException",
    "EC2InstanceStateInvalidException",
}
PERMISSION_CODES = {
    "AccessDenied", "AccessDeniedException", "UnauthorizedOperation", "AuthFailure", "AuthException",
    "UnrecognizedClientException", "InvalidClientTokenId", "ExpiredToken", "ExpiredTokenException",
}
TRANSIENT_CODES = {
    "Throttling", "ThrottlingException", "RequestLimitExceeded", "ServiceUnavailable",
    "ServiceUnavailableException", "InternalError", "InternalFailure", "EC2InstanceUnavailableException",
}

def classify_client_error(exc: Exception) -> RdsProxyError:
    """Map a botocore failure onto one of the typed errors above."""
    if isinstance(exc, botocore.exceptions.ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in NOT_FOUND_CODES:
            return NotFoundError(str(exc))
        if code in PERMISSION_CODES:
            return PermissionDeniedError(str(exc))
        if code in TRANSIENT_CODES:
            return TransientNetworkError(str(exc))
        return RdsProxyError(str(exc))
    if isinstance(exc, (botocore.exceptions.ConnectTimeoutError, botocore.exceptions.ReadTimeoutError)):
        return CommandTimeoutError(str(exc))
    if isinstance(exc, botocore.exceptions.EndpointConnectionError):
        return TransientNetworkError(str(exc))
    if isinstance(exc, botocore.exceptions.NoCredentialsError):
        return PermissionDeniedError(f"{exc}. Configure AWS credentials or pass --profile")
    if isinstance(exc, botocore.exceptions.NoRegionError):
        return RdsProxyError(f"{exc}. Configure a default region or pass --region")
    return RdsProxyError(str(exc))

@contextlib.contextmanager
def aws_errors() -> Iterator[None]:
    try:
        yield
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        raise classify_client_error(e) from e

# ---------------- data ----------------
@dataclass(frozen=True)
class SessionParams:
    db_identifier: str
    jump_host: str
    local_port: int = DEFAULT_LOCAL_PORT
    random_port: bool = False
    profile: Optional[str] = None
    region: Optional[str] = None
    os_user: str = DEFAULT_OS_USER

@dataclass(frozen=True)
class BastionTarget:
    instance_id: str
    availability_zone: str

@dataclass(frozen=True)
class DatabaseTarget:
    address: str
    port: int

    def forward_spec(self, local_port: int) -> str:
        return f"{local_port}:{self.address}:{self.port}"

# ---------------- utilities ----------------
def run_local(cmd: List[str], capture: bool=False, check: bool=True,
              timeout: Optional[float]=None) -> subprocess.CompletedProcess:
    console.log(f"\\[local] {escape(shlex.join(cmd))}")
    pipe = subprocess.PIPE if capture else None
    try:
        res = subprocess.run(cmd, stdout=pipe, stderr=pipe, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise MissingDependencyError(f"Executable not found: {cmd[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise CommandTimeoutError(f"Command timed out after {timeout}s: {shlex.join(cmd)}") from e
    if check and res.returncode != 0:
        raise CommandError(cmd, res.returncode, res.stderr if capture else None)
    return res

def check_dependencies() -> None:
    missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
    if SSM_PLUGIN in missing:
        raise MissingDependencyError(PLUGIN_HELP)
    if missing:
        raise MissingDependencyError(f"Missing required executables: {', '.join(missing)}")

def ensure_key_dir(key_dir: Optional[Path] = None) -> Path:
    key_dir = key_dir or KEY_DIR
    key_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    return key_dir

def control_socket_path(db_identifier: str, key_dir: Optional[Path] = None) -> Path:
    """One control socket per database identifier, shared by every run."""
    return (key_dir or KEY_DIR) / f"bastion-{db_identifier}.sock"

def public_key_path(key_base: Path) -> Path:
    return key_base.with_suffix(".pub")

def remove_key_files(key_base: Path) -> None:
    key_base.unlink(missing_ok=True)
    public_key_path(key_base).unlink(missing_ok=True)

# ---------------- port selection ----------------
def bsd_sum(data: bytes) -> int:
    """16-bit rotating checksum, the default algorithm of sum(1)."""
    checksum = 0
    for byte in data:
        checksum = (checksum >> 1) + ((checksum & 1) << 15)
        checksum = (checksum + byte) & 0xFFFF
    return checksum

def seed_from(identifier: str) -> int:
    """Pseudo-random local port that is stable for a given identifier."""
    rng = random.Random(bsd_sum(f"{identifier}\n".encode()))
    return rng.randrange(RANDOM_PORT_MIN, RANDOM_PORT_MAX + 1)

def select_port(params: SessionParams) -> int:
    if params.random_port:
        return seed_from(params.db_identifier)
    return params.local_port

# ---------------- arguments ----------------
class UsageParser(argparse.ArgumentParser):
    # usage problems exit 1 rather than argparse's 2
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")

def local_port_type(value: str) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return port

def build_parser() -> UsageParser:
    parser = UsageParser(prog="rds_proxy", description=DESCRIPTION, add_help=False)
    parser.add_argument("-h", dest="help", action="store_true", help="Show help")
    parser.add_argument("-d", dest="db_identifier", metavar="db-identifier",
                        help="Required: Select the DB instance to which the tunnel is made")
    parser.add_argument("-l", dest="local_port", metavar="port", type=local_port_type, default=DEFAULT_LOCAL_PORT,
                        help=f"Local port to use for the tunnel (default {DEFAULT_LOCAL_PORT})")
    parser.add_argument("-j", dest="jump_host", metavar="name",
                        help="Required: Name tag of the bastion instance to use (jump host)")
    parser.add_argument("-r", dest="random_port", action="store_true", help="Use random local port")
    parser.add_argument("--profile", help="AWS profile to use (default: standard credential chain)")
    parser.add_argument("--region", help="AWS region to use (default: profile/environment region)")
    parser.add_argument("--os-user", default=DEFAULT_OS_USER,
                        help=f"Login user on the bastion (default {DEFAULT_OS_USER})")
    return parser

def parse_args(argv: Optional[List[str]] = None) -> SessionParams:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.help:
        parser.print_help()
        parser.exit(1)
    if not args.db_identifier:
        print("Missing DB identifier, please specify with -d\n", file=sys.stderr)
        parser.print_help(sys.stderr)
        parser.exit(1)
    if not args.jump_host:
        print("Missing jump instance name, please specify with -j\n", file=sys.stderr)
        parser.print_help(sys.stderr)
        parser.exit(1)
    return SessionParams(db_identifier=args.db_identifier, jump_host=args.jump_host,
                         local_port=args.local_port, random_port=args.random_port,
                         profile=args.profile, region=args.region, os_user=args.os_user)

# ---------------- AWS lookups ----------------
def resolve_bastion(ec2_client, name: str) -> BastionTarget:
    resp = ec2_client.describe_instances(Filters=[
        {"Name": "tag:Name", "Values": [name]},
        {"Name": "instance-state-name", "Values": ["running"]},
    ])
    instances = [inst for res in resp.get("Reservations", []) for inst in res.get("Instances", [])]
    if not instances:
        raise NotFoundError(f"No running instance found with Name tag '{name}'")
    if len(instances) > 1:
        ids = ", ".join(inst["InstanceId"] for inst in instances)
        console.print(f"[yellow]Ambiguous Name tag, using the first of: {ids}[/yellow]")
    inst = instances[0]
    return BastionTarget(instance_id=inst["InstanceId"],
                         availability_zone=inst["Placement"]["AvailabilityZone"])

def resolve_database(rds_client, identifier: str) -> DatabaseTarget:
    resp = rds_client.describe_db_instances(DBInstanceIdentifier=identifier)
    instances = resp.get("DBInstances", [])
    if not instances:
        raise NotFoundError(f"No DB instance found with identifier '{identifier}'")
    db = instances[0]
    endpoint = db.get("Endpoint") or {}
    if not endpoint.get("Address"):
        status = db.get("DBInstanceStatus", "unknown")
        raise NotFoundError(f"DB instance '{identifier}' has no endpoint yet (status: {status})")
    return DatabaseTarget(address=endpoint["Address"], port=int(endpoint["Port"]))

# ---------------- credentials ----------------
def provision_key(ec2ic_client, key_base: Path, bastion: BastionTarget, os_user: str) -> Path:
    """Generate a fresh key pair and push the public half to the bastion."""
    remove_key_files(key_base)
    run_local(["ssh-keygen", "-t", "rsa", "-f", str(key_base), "-N", "", "-q"])
    pub = public_key_path(key_base)
    if not pub.exists():
        raise RdsProxyError("ssh-keygen failed to create public key")
    # usable for KEY_VALIDITY_SECONDS after upload
    ec2ic_client.send_ssh_public_key(InstanceId=bastion.instance_id,
                                     AvailabilityZone=bastion.availability_zone,
                                     InstanceOSUser=os_user,
                                     SSHPublicKey=pub.read_text())
    console.print(f"[green]Temporary key pushed to {bastion.instance_id} "
                  f"(valid for {KEY_VALIDITY_SECONDS}s)[/green]")
    return key_base

# ---------------- tunnel ----------------
def build_proxy_command(profile: Optional[str] = None, region: Optional[str] = None) -> str:
    cmd = ["aws", "ssm", "start-session", "--target", "%h",
           "--document-name", SSM_DOCUMENT, "--parameters", "portNumber=%p"]
    if profile:
        cmd += ["--profile", profile]
    if region:
        cmd += ["--region", region]
    return shlex.join(cmd)

def build_ssh_command(key_base: Path, socket_path: Path, local_port: int, database: DatabaseTarget,
                      bastion: BastionTarget, os_user: str = DEFAULT_OS_USER,
                      profile: Optional[str] = None, region: Optional[str] = None) -> List[str]:
    return [
        "ssh",
        "-i", str(key_base),
        "-4",
        "-f",
        "-N",
        "-M",
        "-S", str(socket_path),
        "-L", database.forward_spec(local_port),
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "StrictHostKeyChecking=no",
        "-o", "IdentitiesOnly=yes",
        "-o", f"ProxyCommand={build_proxy_command(profile, region)}",
        f"{os_user}@{bastion.instance_id}",
    ]

def ensure_socket_free(socket_path: Path) -> None:
    if not socket_path.exists():
        return
    res = run_local(["ssh", "-O", "check", "-S", str(socket_path), "*"],
                    capture=True, check=False, timeout=SOCKET_CHECK_TIMEOUT)
    if res.returncode == 0:
        raise TunnelInUseError(f"A tunnel is already running on control socket {socket_path}")
    console.print(f"[yellow]Removing stale control socket {escape(str(socket_path))}[/yellow]")
    socket_path.unlink(missing_ok=True)

def start_tunnel(cmd: List[str]) -> None:
    # -f: ssh backgrounds itself once authenticated
    run_local(cmd)

def wait_for_keypress(prompt: str = "Press any key to close session.") -> None:
    console.print(prompt, end="")
    try:
        if sys.stdin.isatty():
            import termios, tty
            fd = sys.stdin.fileno()
            old = termios.tcgetattr(fd)
            try:
                tty.setcbreak(fd)
                os.read(fd, 1)
            finally:
                termios.tcsetattr(fd, termios.TCSADRAIN, old)
        else:
            sys.stdin.readline()
    except KeyboardInterrupt:
        pass
    console.print()

def teardown(socket_path: Path, key_base: Path) -> None:
    """Stop the ssh master and remove the key files, even if the stop fails."""
    try:
        run_local(["ssh", "-O", "exit", "-S", str(socket_path), "*"])
    finally:
        remove_key_files(key_base)

# ---------------- main flow ----------------
def run(params: SessionParams) -> int:
    key_dir = ensure_key_dir()
    key_base = key_dir / KEY_BASENAME
    socket_path = control_socket_path(params.db_identifier, key_dir)
    local_port = select_port(params)

    console.print(f"[cyan]Starting SSH tunnel to {escape(params.db_identifier)} via {escape(params.jump_host)}[/cyan]")

    with aws_errors():
        session = boto3.Session(profile_name=params.profile, region_name=params.region)
        bastion = resolve_bastion(session.client("ec2"), params.jump_host)
        database = resolve_database(session.client("rds"), params.db_identifier)
    console.print(f"Bastion: [green]{bastion.instance_id}[/green] ({bastion.availability_zone}), "
                  f"database: [green]{database.address}:{database.port}[/green]")

    ensure_socket_free(socket_path)

    with aws_errors():
        provision_key(session.client("ec2-instance-connect"), key_base, bastion, params.os_user)

    start_tunnel(build_ssh_command(key_base, socket_path, local_port, database, bastion,
                                   os_user=params.os_user, profile=params.profile, region=params.region))

    console.print(Panel(f"Host: [bold]localhost[/bold]\nPort: [bold]{local_port}[/bold]\n"
                        f"Target: {database.address}:{database.port}\nBastion: {bastion.instance_id}",
                        title="RDS tunnel"))
    console.print(f"[green]RDS tunnel started on localhost at port {local_port} "
                  f"for {escape(params.db_identifier)}[/green]")

    wait_for_keypress()
    teardown(socket_path, key_base)
    console.print("Tunnel closed.")
    return 0

def main(argv: Optional[List[str]] = None) -> int:
    try:
        check_dependencies()
        params = parse_args(argv)
        return run(params)
    except RdsProxyError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return e.exit_code
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130

if __name__ == '__main__':
    sys.exit(main())
