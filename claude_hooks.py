#!/usr/bin/env python3
# Dependencies: pyyaml
# Install with: pip install pyyaml

"""
Claude Hooks - PreToolUse and Notification hooks for Claude Code
Blocks forbidden Bash commands using layered per-directory configuration
"""

import argparse
import json
import logging
import os
import re
import shutil
import subprocess
import sys
from pathlib import Path
import yaml
from typing import List, Optional, Dict, Any
from dataclasses import dataclass
from abc import ABC, abstractmethod


logger = logging.getLogger('claude_hooks')


# ============================================================================
# Data Models
# ============================================================================

@dataclass(frozen=True)
class PatternRule:
    """A forbidden command pattern and the message shown when it matches"""
    pattern: str
    reason: str
    suggestion: str
    pattern_type: Optional[str] = None


@dataclass(frozen=True)
class DenyResult:
    """Denial metadata of the first matching rule"""
    reason: str
    suggestion: str

    @property
    def message(self) -> str:
        return f"{self.reason} {self.suggestion}"


@dataclass
class CheckResult:
    """Result from a security check"""
    allowed: bool
    denial: Optional[DenyResult] = None

    @classmethod
    def allow(cls):
        return cls(allowed=True)

    @classmethod
    def deny(cls, denial: DenyResult):
        return cls(allowed=False, denial=denial)


@dataclass
class CommandContext:
    """Context for command analysis"""
    sub_commands: List[str]


class PatternError(ValueError):
    """Raised when a forbidden pattern cannot be compiled"""


# ============================================================================
# Configuration Management
# ============================================================================

CONFIG_DIRNAME = '.claude'
CONFIG_FILENAME = 'nownabe-claude-hooks.json'
LOCAL_CONFIG_FILENAME = 'nownabe-claude-hooks.local.json'

PATTERN_TYPES = ('glob', 'regex')


def collect_ancestor_dirs(start_dir: str, stop_dir: str) -> List[Path]:
    """Directories from start_dir up to stop_dir, most specific first.

    Walks parent links until stop_dir is reached. When stop_dir is not an
    ancestor of start_dir the walk ends at the filesystem root instead.
    """
    current = Path(os.path.normpath(os.path.abspath(start_dir)))
    stop = Path(os.path.normpath(os.path.abspath(stop_dir)))

    dirs = []
    while True:
        dirs.append(current)
        if current == stop:
            break
        parent = current.parent
        if parent == current:
            break
        current = parent
    return dirs


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Nested dictionaries are merged key by key; lists, scalars and type
    mismatches are replaced wholesale by the override value.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def find_config_files(cwd: str, home: str) -> List[Path]:
    """Existing config files in priority order, highest first"""
    files = []
    for directory in collect_ancestor_dirs(cwd, home):
        config_dir = directory / CONFIG_DIRNAME
        for filename in (LOCAL_CONFIG_FILENAME, CONFIG_FILENAME):
            path = config_dir / filename
            # isfile reports an unsearchable directory as missing instead of raising
            if os.path.isfile(path):
                files.append(path)
    return files


def _read_config_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            content = json.load(f)
    except (OSError, ValueError) as e:
        logger.debug("Skipping unreadable config %s: %s", path, e)
        return None

    if not isinstance(content, dict):
        logger.debug("Skipping config %s: top level is not an object", path)
        return None
    return content


def load_config(cwd: str, home: Optional[str]) -> Dict[str, Any]:
    """Load config files from cwd up to home and deep merge them.

    The lowest priority file (home, non-local) is the base and every file
    closer to cwd is merged on top of it, so cwd's local file wins.
    """
    if not home:
        return {}
    return merge_config_files(find_config_files(cwd, home))


def merge_config_files(files: List[Path]) -> Dict[str, Any]:
    """Fold config files given highest priority first; unreadable ones are skipped"""
    logger.debug("Config files (highest priority first): %s", [str(f) for f in files])

    merged: Dict[str, Any] = {}
    for path in reversed(files):
        content = _read_config_file(path)
        if content is not None:
            merged = deep_merge(merged, content)
    return merged


def _text(value: Any) -> str:
    return '' if value is None else str(value)


def _rule_from_entry(pattern: Any, entry: Any) -> Optional[PatternRule]:
    if not isinstance(entry, dict) or not isinstance(pattern, str) or not pattern:
        return None
    if entry.get('disabled'):
        return None

    pattern_type = entry.get('type')
    if pattern_type not in PATTERN_TYPES:
        pattern_type = None

    return PatternRule(
        pattern=pattern,
        reason=_text(entry.get('reason')),
        suggestion=_text(entry.get('suggestion')),
        pattern_type=pattern_type,
    )


def normalize_forbidden_patterns(raw: Any) -> List[PatternRule]:
    """Turn either config shape of forbiddenPatterns into ordered rules.

    Accepts a list of rule objects carrying their own ``pattern`` key, or a
    mapping keyed by pattern string. Disabled and malformed entries are
    dropped here so the evaluator only ever sees active rules.
    """
    if isinstance(raw, list):
        candidates = [
            _rule_from_entry(entry.get('pattern'), entry) if isinstance(entry, dict) else None
            for entry in raw
        ]
    elif isinstance(raw, dict):
        candidates = [_rule_from_entry(pattern, entry) for pattern, entry in raw.items()]
    else:
        return []
    return [rule for rule in candidates if rule is not None]


class ConfigManager:
    """Merged configuration for one working directory"""

    def __init__(self, cwd: str, home: Optional[str]):
        self.files = find_config_files(cwd, home) if home else []
        self.config = merge_config_files(self.files)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name)
        return section if isinstance(section, dict) else {}

    def forbidden_patterns(self) -> List[PatternRule]:
        """Active forbidden patterns from preBash.forbiddenPatterns"""
        return normalize_forbidden_patterns(self._section('preBash').get('forbiddenPatterns'))

    def notification_config(self) -> Dict[str, Any]:
        return self._section('notification')

    def notification_sounds(self) -> Dict[str, str]:
        sounds = self.notification_config().get('sounds')
        if not isinstance(sounds, dict):
            return {}
        return {str(k): v for k, v in sounds.items() if isinstance(v, str)}


# ============================================================================
# Pattern Compilation
# ============================================================================

_DELIMITED_REGEX = re.compile(r'^/(.+)/([gimsuy]*)\Z')

_REGEX_FLAGS = {
    'i': re.IGNORECASE,
    'm': re.MULTILINE,
    's': re.DOTALL,
}


@dataclass(frozen=True)
class Matcher:
    """Compiled pattern; glob matchers are anchored, regex matchers search"""
    regex: 're.Pattern[str]'
    sticky: bool = False

    def test(self, candidate: str) -> bool:
        if self.sticky:
            return self.regex.match(candidate) is not None
        return self.regex.search(candidate) is not None


def _compile(source: str, flags: int, pattern: str) -> 're.Pattern[str]':
    try:
        return re.compile(source, flags)
    except re.error as e:
        raise PatternError(f"Invalid pattern {pattern!r}: {e}") from e


def glob_to_regex(pattern: str) -> str:
    """Translate a permission-style glob into an anchored regex source.

    ``cmd *`` matches ``cmd`` alone or ``cmd`` followed by whitespace and
    anything, ``cmd*`` matches anything starting with ``cmd``, and a trailing
    ``:*`` is the deprecated spelling of `` *``.
    """
    if pattern.endswith(':*'):
        pattern = pattern[:-2] + ' *'

    parts = pattern.split('*')
    regex = '^'
    for i, part in enumerate(parts):
        if i == len(parts) - 1:
            regex += re.escape(part)
        elif part.endswith(' '):
            is_last = i == len(parts) - 2 and parts[i + 1] == ''
            regex += re.escape(part[:-1]) + (r'(\s.*)?' if is_last else r'\s.*')
        else:
            regex += re.escape(part) + '.*'
    return regex + r'\Z'


def compile_pattern(pattern: str, pattern_type: Optional[str] = None) -> Matcher:
    """Compile a glob or regex pattern into a Matcher.

    With no explicit type, ``/body/flags`` is a delimited regex and everything
    else is a glob.
    """
    if pattern_type == 'regex':
        return Matcher(_compile(pattern, 0, pattern))
    if pattern_type == 'glob':
        return Matcher(_compile(glob_to_regex(pattern), 0, pattern))

    delimited = _DELIMITED_REGEX.match(pattern)
    if delimited:
        body, flag_chars = delimited.groups()
        flags = 0
        for char in flag_chars:
            flags |= _REGEX_FLAGS.get(char, 0)
        return Matcher(_compile(body, flags, pattern), sticky='y' in flag_chars)

    return Matcher(_compile(glob_to_regex(pattern), 0, pattern))


# ============================================================================
# Command Splitting
# ============================================================================

# Operators inside quotes are split as well; there is no shell grammar here.
_SHELL_OPERATORS = re.compile(r'\s*(?:&&|\|\||[;|])\s*')


def split_command(command: str) -> List[str]:
    """Split a command on &&, ||, ; and |, trimming each sub-command"""
    return [part.strip() for part in _SHELL_OPERATORS.split(command) if part.strip()]


# ============================================================================
# Security Checks
# ============================================================================

def check_forbidden_patterns(command: str, rules: List[PatternRule]) -> Optional[DenyResult]:
    """Return the denial of the first rule matching any sub-command.

    Rules are tried in order and each rule is tested against every
    sub-command before moving on to the next rule.
    """
    return match_sub_commands(split_command(command), rules)


def match_sub_commands(sub_commands: List[str], rules: List[PatternRule]) -> Optional[DenyResult]:
    for rule in rules:
        matcher = compile_pattern(rule.pattern, rule.pattern_type)
        for sub in sub_commands:
            if matcher.test(sub):
                logger.debug("Pattern %r matched %r", rule.pattern, sub)
                return DenyResult(reason=rule.reason, suggestion=rule.suggestion)
    return None


class SecurityCheck(ABC):
    """Base class for security checks"""

    @abstractmethod
    def check(self, context: CommandContext) -> CheckResult:
        """Perform security check"""
        pass


class ForbiddenPatternCheck(SecurityCheck):
    """Check sub-commands against configured forbidden patterns"""

    def __init__(self, rules: List[PatternRule]):
        self.rules = rules

    def check(self, context: CommandContext) -> CheckResult:
        if not self.rules:
            return CheckResult.allow()

        denial = match_sub_commands(context.sub_commands, self.rules)
        return CheckResult.deny(denial) if denial else CheckResult.allow()


# ============================================================================
# Pre-Bash Guard
# ============================================================================

class PreBashGuard:
    """Runs every security check against a Bash command"""

    def __init__(self, config: ConfigManager):
        self.config = config
        self.checks: List[SecurityCheck] = [
            ForbiddenPatternCheck(config.forbidden_patterns()),
        ]

    def check_command(self, command: str) -> Optional[DenyResult]:
        """Return the first denial, or None when no check has an opinion"""
        if not command.strip():
            return None

        context = CommandContext(
            sub_commands=split_command(command),
        )
        for check in self.checks:
            result = check.check(context)
            if not result.allowed:
                return result.denial
        return None


def build_deny_response(denial: DenyResult) -> Dict[str, Any]:
    """PreToolUse hook output denying the tool call"""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": denial.message,
            "additionalContext": denial.suggestion,
        }
    }


def run_pre_bash(input_data: Dict[str, Any], home: Optional[str]) -> Optional[Dict[str, Any]]:
    """Evaluate one PreToolUse payload; None means no opinion"""
    tool_input = input_data.get('tool_input') or {}
    command = tool_input.get('command') or ''
    cwd = input_data.get('cwd') or os.getcwd()

    logger.debug("cwd: %s, home: %s", cwd, home)
    logger.debug("Command: %s", command)

    guard = PreBashGuard(ConfigManager(cwd, home))
    denial = guard.check_command(command)
    if denial is None:
        logger.debug("No forbidden pattern matched")
        return None

    logger.debug("Denied: %s", denial.message)
    return build_deny_response(denial)


# ============================================================================
# Notification
# ============================================================================

DEFAULT_SOUNDS = {
    'permission_prompt': 'C:\\Windows\\Media\\Windows Notify System Generic.wav',
    '*': 'C:\\Windows\\Media\\tada.wav',
}

POWERSHELL_FALLBACK = '/mnt/c/Windows/System32/WindowsPowerShell/v1.0/powershell.exe'

NOTIFY_TIMEOUT_SECONDS = 30


def detect_platform(proc_version: str = '/proc/version') -> str:
    """One of 'wsl', 'macos', 'linux' or 'unknown'"""
    try:
        with open(proc_version, 'r', encoding='utf-8') as f:
            version = f.read().lower()
        if 'microsoft' in version or 'wsl' in version:
            return 'wsl'
    except OSError:
        pass

    if sys.platform == 'darwin':
        return 'macos'
    if sys.platform.startswith('linux'):
        return 'linux'
    return 'unknown'


def resolve_sound(notification_type: Optional[str], sounds: Dict[str, str]) -> str:
    """Sound for a notification type, falling back to the '*' entry"""
    merged = {**DEFAULT_SOUNDS, **sounds}
    if notification_type and merged.get(notification_type):
        return merged[notification_type]
    return merged.get('*') or DEFAULT_SOUNDS['*']


def find_powershell() -> Optional[str]:
    found = shutil.which('powershell.exe')
    if found:
        return found
    if os.path.exists(POWERSHELL_FALLBACK):
        return POWERSHELL_FALLBACK
    return None


def escape_powershell_string(s: str) -> str:
    return s.replace("'", "''")


def build_notification_script(title: str, message: str, sound: str) -> str:
    """PowerShell that plays the sound and shows a balloon tip"""
    return '; '.join([
        f"$sound = New-Object System.Media.SoundPlayer '{escape_powershell_string(sound)}'",
        "$sound.playsync()",
        "Add-Type -AssemblyName System.Windows.Forms",
        "$notify = New-Object System.Windows.Forms.NotifyIcon",
        "$notify.Icon = [System.Drawing.SystemIcons]::Information",
        f"$notify.BalloonTipTitle = '{escape_powershell_string(title)}'",
        f"$notify.BalloonTipText = '{escape_powershell_string(message)}'",
        "$notify.Visible = $true",
        "$notify.ShowBalloonTip(5000)",
        "Start-Sleep -Seconds 1",
        "$notify.Dispose()",
    ])


def notify_wsl(title: str, message: str, sound: str) -> bool:
    """Show a Windows notification from WSL; returns False if it could not be sent"""
    powershell = find_powershell()
    if not powershell:
        logger.warning("powershell.exe not found, skipping notification")
        return False

    script = build_notification_script(title, message, sound)
    try:
        subprocess.run(
            [powershell, '-NoProfile', '-NonInteractive', '-Command', script],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=NOTIFY_TIMEOUT_SECONDS,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Failed to send Windows notification: %s", e)
        return False
    return True


def run_notification(input_data: Dict[str, Any], home: Optional[str]) -> None:
    title = input_data.get('title') or 'Claude Code'
    message = input_data.get('message') or ''
    cwd = input_data.get('cwd') or os.getcwd()

    config = ConfigManager(cwd, home)
    sound = resolve_sound(input_data.get('notification_type'), config.notification_sounds())

    platform = detect_platform()
    logger.debug("Platform: %s, sound: %s", platform, sound)

    if platform == 'wsl':
        notify_wsl(title, message, sound)
    # TODO: native notifications for macOS (osascript) and Linux (notify-send)


# ============================================================================
# Config Inspection
# ============================================================================

def describe_config(cwd: str, home: Optional[str]) -> str:
    """YAML dump of the merged config and the rules the guard will apply"""
    config = ConfigManager(cwd, home)

    report = {
        'files': [str(path) for path in config.files],
        'merged': config.config,
        'activePatterns': [
            {
                'pattern': rule.pattern,
                'type': rule.pattern_type or 'auto',
                'reason': rule.reason,
                'suggestion': rule.suggestion,
            }
            for rule in config.forbidden_patterns()
        ],
        'sounds': {**DEFAULT_SOUNDS, **config.notification_sounds()},
    }
    return yaml.safe_dump(report, sort_keys=False, allow_unicode=True, default_flow_style=False)


# ============================================================================
# Entry Point
# ============================================================================

def _configure_logging():
    # stdout carries the hook response, so diagnostics only ever go to stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter('%(name)s: %(levelname)s: %(message)s'))
    logger.handlers[:] = [handler]
    logger.propagate = False
    logger.setLevel(logging.DEBUG if os.environ.get('CLAUDE_HOOKS_DEBUG') else logging.WARNING)


def _read_hook_input() -> Dict[str, Any]:
    data = json.load(sys.stdin)
    if not isinstance(data, dict):
        raise ValueError("hook input must be a JSON object")
    return data


def _cmd_pre_bash(args) -> int:
    try:
        response = run_pre_bash(_read_hook_input(), os.environ.get('HOME'))
    except PatternError as e:
        print(f"Forbidden pattern error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        # On error, let the normal permission flow decide
        print(f"Hook execution error: {str(e)}", file=sys.stderr)
        return 0

    if response is not None:
        print(json.dumps(response))
    return 0


def _cmd_notification(args) -> int:
    try:
        run_notification(_read_hook_input(), os.environ.get('HOME'))
    except Exception as e:
        print(f"Hook execution error: {str(e)}", file=sys.stderr)
    return 0


def _cmd_config(args) -> int:
    cwd = args.cwd or os.getcwd()
    sys.stdout.write(describe_config(cwd, os.environ.get('HOME')))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='claude-hooks', description='Hooks for Claude Code')
    subparsers = parser.add_subparsers(dest='command', metavar='command')
    subparsers.required = True

    pre_bash = subparsers.add_parser('pre-bash', help='PreToolUse hook for the Bash tool (reads stdin)')
    pre_bash.set_defaults(func=_cmd_pre_bash)

    notification = subparsers.add_parser('notification', help='Notification hook (reads stdin)')
    notification.set_defaults(func=_cmd_notification)

    config = subparsers.add_parser('config', help='Show the merged configuration as YAML')
    config.add_argument('--cwd', help='Directory to resolve configuration for (default: current)')
    config.set_defaults(func=_cmd_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry function"""
    _configure_logging()
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
