#!/usr/bin/env python3
"""
AWS MFA Environment Renewer
Renews temporary AWS credentials for a profile with an MFA code, caches the
session per profile and writes shell exports for the active session.
"""

import argparse
import configparser
import getpass
import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import boto3
import botocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv


AWS_CREDENTIALS_FILE = Path.home() / ".aws" / "credentials"
SESSION_DATA_DIR = Path.home() / ".aws" / "session-data"
ENV_FILE = Path.home() / ".aws" / "env"
OUTPUT_DIR = Path.home() / ".aws" / "logs"
MFA_SERIAL_KEY = 'aws_mfa_serial'
SESSION_FILE_SUFFIX = '.session'
SESSION_KEYS = ('AccessKeyId', 'SecretAccessKey', 'SessionToken')

# configparser needs a defaults section name; [DEFAULT] must stay an ordinary profile
NO_DEFAULT_SECTION = '\0'

# Order matters: the env file is written in this order
ENV_VARIABLES = (
    ('AWS_ACCESS_KEY_ID', 'AccessKeyId'),
    ('AWS_SECRET_ACCESS_KEY', 'SecretAccessKey'),
    ('AWS_SESSION_TOKEN', 'SessionToken'),
)

# Custom User-Agent suffix for AWS API calls
BOTO_CONFIG = Config(user_agent_extra='aws-mfa-env/1.0')

PathLike = Union[str, Path]

# Global logger
logger = logging.getLogger("aws_mfa_env")


class MFAEnvError(Exception):
    """Fatal, user-facing failure while renewing a session."""


def config_path(variable: str, default: Path) -> Path:
    """Resolve a path setting from the environment, falling back to default."""
    return Path(os.environ.get(variable, str(default))).expanduser()


def setup_logging(debug: bool = False, log_dir: PathLike = OUTPUT_DIR):
    """Configure logging to file and optionally to console in debug mode."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"aws_mfa_env_{datetime.now().strftime('%Y%m%d')}.log"

    # Repeated calls must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    if debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        logger.addHandler(console_handler)

    logger.debug(f"Logging initialized. Log file: {log_file}")


class Colors:
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def print_banner():
    banner = f"""
{Colors.CYAN}{Colors.BOLD}
╔═══════════════════════════════════════════════════════════╗
║           AWS MFA Session Environment                     ║
╚═══════════════════════════════════════════════════════════╝
{Colors.ENDC}"""
    print(banner)


def print_success(msg: str):
    print(f"{Colors.GREEN}✓ {msg}{Colors.ENDC}")
    logger.info(f"SUCCESS: {msg}")


def print_error(msg: str):
    print(f"{Colors.RED}✗ {msg}{Colors.ENDC}")
    logger.error(msg)


def print_warning(msg: str):
    print(f"{Colors.YELLOW}⚠ {msg}{Colors.ENDC}")
    logger.warning(msg)


def print_info(msg: str):
    print(f"{Colors.BLUE}ℹ {msg}{Colors.ENDC}")
    logger.info(msg)


def restrict_permissions(path: Path):
    """Limit a file holding secrets to owner read/write (600)."""
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.debug(f"Could not set permissions on {path}: {e}")


def write_private_file(path: Path, text: str):
    """Overwrite a file holding secrets without ever exposing it to others.

    New files are created as 600; an existing file is truncated and
    restricted before anything is written to it.
    """
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        restrict_permissions(path)
        f.write(text)


class CredentialsFile:
    """Profiles and their settings parsed from an AWS credentials file.

    The text is parsed once into a mapping of profile name to key/value pairs.
    Option names are case-insensitive, whitespace around '=' is ignored and
    duplicate sections or keys are merged with the later value winning.
    Every section is a profile of its own, including [DEFAULT], and no keys
    are shared between profiles. Indented lines are read as ordinary key
    lines, not as continuations of the previous value.
    """

    def __init__(self, text: str):
        self._parser = configparser.ConfigParser(
            interpolation=None,
            strict=False,
            default_section=NO_DEFAULT_SECTION
        )
        self._parser.read_string('\n'.join(line.lstrip() for line in text.splitlines()))

    @classmethod
    def from_path(cls, path: PathLike) -> 'CredentialsFile':
        """Load a credentials file. Raises OSError if it cannot be read."""
        path = Path(path)
        text = path.read_text()
        logger.debug(f"Loaded credentials from {path}")
        return cls(text)

    def profiles(self) -> List[str]:
        """Section headers in file order, brackets included."""
        return [f"[{section}]" for section in self._parser.sections()]

    def mfa_serial(self, profile: str) -> Optional[str]:
        """Get the MFA device serial configured for a profile, if any."""
        logger.debug(f"Looking up MFA serial for profile: {profile}")
        if not self._parser.has_section(profile):
            logger.debug(f"Profile {profile} not found in credentials file")
            return None

        mfa_serial = self._parser.get(profile, MFA_SERIAL_KEY, fallback='').strip()
        if not mfa_serial:
            logger.debug(f"MFA serial not configured for {profile}")
            return None

        logger.debug(f"Found MFA serial for {profile}: {mfa_serial}")
        return mfa_serial


def is_session_record(data) -> bool:
    """Check that parsed cache content looks like an STS credential set."""
    if not isinstance(data, dict):
        return False
    if any(not isinstance(data.get(key), str) for key in SESSION_KEYS):
        return False
    return 'Expiration' in data


class SessionCache:
    """Per-profile JSON files holding the most recent temporary session."""

    def __init__(self, directory: PathLike = SESSION_DATA_DIR):
        self.directory = Path(directory)

    def path(self, profile: str) -> Path:
        return self.directory / f"{profile}{SESSION_FILE_SUFFIX}"

    def load(self, profile: str) -> Optional[Dict]:
        """Return the cached session for a profile, or None.

        A missing, unreadable or corrupt cache file is not an error: it just
        means there is no session to reuse.
        """
        path = self.path(profile)
        try:
            with open(path) as f:
                session = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"No usable cached session for {profile} at {path}: {e}")
            return None

        if not is_session_record(session):
            logger.debug(f"Ignoring malformed session cache {path}")
            return None

        logger.debug(f"Loaded cached session for {profile} from {path}")
        return session

    def store(self, profile: str, session: Dict):
        path = self.path(profile)
        self.directory.mkdir(parents=True, exist_ok=True)
        write_private_file(path, json.dumps(session, indent=2))
        logger.info(f"Saved session for {profile} to {path}")


def parse_expiration(value) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime.

    Naive timestamps are taken to be UTC. Returns None if the value cannot
    be interpreted as a point in time.
    """
    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        expiration = datetime.fromisoformat(text)
    except ValueError:
        return None

    if expiration.tzinfo is None:
        expiration = expiration.replace(tzinfo=timezone.utc)
    return expiration


def format_expiration(value) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def is_session_expired(session: Dict, now: Optional[datetime] = None) -> bool:
    """True iff the session expired strictly before now.

    A session whose expiration cannot be parsed counts as expired.
    """
    expiration = parse_expiration(session.get('Expiration'))
    if expiration is None:
        logger.debug(f"Unparseable session expiration: {session.get('Expiration')!r}")
        return True

    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    return expiration < now


def get_session_token(profile: str, mfa_serial: str, mfa_code: str,
                      credentials_file: Optional[PathLike] = None) -> Dict:
    """Get temporary session credentials using MFA.

    Authenticates with the long-term credentials of the profile and lets STS
    pick the session duration. Errors from botocore are logged and re-raised.
    """
    logger.debug(f"Requesting session token for profile={profile}, mfa_serial={mfa_serial}")

    core_session = botocore.session.Session(profile=profile)
    if credentials_file is not None:
        core_session.set_config_variable('credentials_file', str(credentials_file))

    try:
        session = boto3.Session(botocore_session=core_session)
        sts = session.client('sts', config=BOTO_CONFIG)
        response = sts.get_session_token(
            SerialNumber=mfa_serial,
            TokenCode=mfa_code
        )
    except ClientError as e:
        error_code = e.response['Error']['Code']
        logger.error(f"MFA authentication failed for {profile}: {error_code} - {e}")
        raise
    except BotoCoreError as e:
        logger.error(f"Error getting session token for {profile}: {e}")
        raise

    credentials = response['Credentials']
    logger.debug(f"Session token obtained successfully, expires: {credentials['Expiration']}")
    return {
        'AccessKeyId': credentials['AccessKeyId'],
        'SecretAccessKey': credentials['SecretAccessKey'],
        'SessionToken': credentials['SessionToken'],
        'Expiration': format_expiration(credentials['Expiration']),
    }


def strip_brackets(profile: str) -> str:
    if profile.startswith('[') and profile.endswith(']'):
        return profile[1:-1]
    return profile


def select_profile(profiles: List[str]) -> str:
    """Let the user pick one profile from a numbered menu.

    Accepts either the profile name or the menu number and keeps asking until
    one of them matches. A name match wins, so a profile named like a
    number stays selectable by name. Returns the name without brackets.
    """
    if not profiles:
        raise MFAEnvError("No profiles found in the credentials file")

    names = [strip_brackets(profile) for profile in profiles]

    print(f"\n{Colors.BOLD}Select an AWS profile:{Colors.ENDC}")
    for index, profile in enumerate(profiles, start=1):
        print(f"  {index}. {profile}")

    while True:
        choice = input(f"{Colors.YELLOW}Profile [1-{len(profiles)}]: {Colors.ENDC}").strip()

        if strip_brackets(choice) in names:
            profile = strip_brackets(choice)
            break

        if choice.isdigit() and 1 <= int(choice) <= len(names):
            profile = names[int(choice) - 1]
            break

        print_error(f"Invalid choice '{choice}'")

    logger.info(f"Selected profile: {profile}")
    return profile


def prompt_mfa_code(profile: str) -> str:
    """Read the MFA code without echo. Only surrounding whitespace is removed."""
    return getpass.getpass(f"{Colors.YELLOW}Enter MFA code for {profile}: {Colors.ENDC}").strip()


def write_env_file(path: PathLike, session: Dict):
    """Overwrite path with shell exports for the session credentials."""
    path = Path(path)
    lines = [f"export {variable}={session[key]}" for variable, key in ENV_VARIABLES]

    path.parent.mkdir(parents=True, exist_ok=True)
    write_private_file(path, '\n'.join(lines))

    logger.info(f"Wrote exports for access key {session['AccessKeyId'][:8]}... to {path}")


def renew_session(profile: str, credentials: CredentialsFile, cache: SessionCache,
                  env_path: PathLike, credentials_file: Optional[PathLike] = None,
                  exchange: Optional[Callable[..., Dict]] = None,
                  prompt: Optional[Callable[[str], str]] = None) -> Dict:
    """Make sure the profile has a valid session and export it.

    A cached session is reused while it has not expired. Otherwise the user
    is asked for an MFA code and a new session is obtained and cached. The
    env file is always written from what the cache holds afterwards.
    """
    exchange = exchange or get_session_token
    prompt = prompt or prompt_mfa_code

    session = cache.load(profile)
    if session is None or is_session_expired(session):
        print_info("Credentials have expired, renewing...")

        mfa_serial = credentials.mfa_serial(profile)
        if not mfa_serial:
            raise MFAEnvError(f"Could not find MFA serial for profile {profile}")

        mfa_code = prompt(profile)
        cache.store(profile, exchange(profile, mfa_serial, mfa_code, credentials_file=credentials_file))

        session = cache.load(profile)
        if session is None:
            raise MFAEnvError(f"Could not read back the session stored for profile {profile}")
    else:
        remaining = parse_expiration(session['Expiration']) - datetime.now(timezone.utc)
        hours, remainder = divmod(int(remaining.total_seconds()), 3600)
        minutes = remainder // 60
        print_success(f"Session still valid for {hours}h {minutes}m")

    write_env_file(env_path, session)
    return session


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='AWS MFA Session Environment - renew temporary credentials and export them',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  AWS_MFA_ENV_CREDENTIALS   credentials file (default: ~/.aws/credentials)
  AWS_MFA_ENV_SESSION_DIR   session cache directory (default: ~/.aws/session-data)
  AWS_MFA_ENV_FILE          exports written here (default: ~/.aws/env)
  AWS_MFA_ENV_LOG_DIR       log directory (default: ~/.aws/logs)

Afterwards run: source ~/.aws/env
        """
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Minimal output'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug mode with verbose logging'
    )

    args = parser.parse_args(argv)

    try:
        # Load environment variables from .env file if present
        env_file = Path.cwd() / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        credentials_path = config_path('AWS_MFA_ENV_CREDENTIALS', AWS_CREDENTIALS_FILE)
        session_dir = config_path('AWS_MFA_ENV_SESSION_DIR', SESSION_DATA_DIR)
        env_path = config_path('AWS_MFA_ENV_FILE', ENV_FILE)

        setup_logging(debug=args.debug, log_dir=config_path('AWS_MFA_ENV_LOG_DIR', OUTPUT_DIR))
        logger.info("AWS MFA env started")
        logger.debug(f"Arguments: {vars(args)}")

        if not args.quiet:
            print_banner()

        if not credentials_path.exists():
            print_error(f"AWS credentials file not found: {credentials_path}")

        credentials = CredentialsFile.from_path(credentials_path)
        profile = select_profile(credentials.profiles())
        renew_session(profile, credentials, SessionCache(session_dir), env_path,
                      credentials_file=credentials_path)
    except KeyboardInterrupt:
        print("")
        print_warning("Cancelled by user")
        return 1
    except Exception as e:
        print("")
        print(traceback.format_exc())
        logger.error(f"Session renewal failed: {e}")
        return 1

    print_success(f"Updated credentials file for profile and set env to {profile}!")
    logger.info("Completed")
    return 0


if __name__ == '__main__':
    sys.exit(main())
