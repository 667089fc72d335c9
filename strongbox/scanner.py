"""
Malware scanner collaborators used during backup verification.

A scanner exposes scan_file(path) and returns a dict:
    {'is_clean': bool, 'threat': str|None, 'skipped': bool,
     'error': str|None, 'message': str}
"""

import os
import logging
import subprocess
from typing import Dict, Any, Optional

from strongbox.backup.errors import ScanError

logger = logging.getLogger(__name__)


def _result(is_clean: bool, message: str, threat: Optional[str] = None, skipped: bool = False,
            error: Optional[str] = None) -> Dict[str, Any]:
    return {
        'is_clean': is_clean,
        'threat': threat,
        'skipped': skipped,
        'error': error,
        'message': message
    }


class NullScanner:
    """Scanner used when no malware engine is configured."""

    def scan_file(self, path: str) -> Dict[str, Any]:
        return _result(True, 'Malware scanning not configured', skipped=True)


class ClamAVScanner:
    """
    Scans files with the ClamAV command line scanner (clamscan).

    Exit code 0 means clean, 1 means a threat was found; anything else
    is an error.
    """

    def __init__(self, executable: str = 'clamscan', timeout: int = 60):
        """
        Initialize ClamAV scanner.

        Args:
            executable: clamscan (or clamdscan) binary
            timeout: Seconds before a single scan is abandoned
        """
        self.executable = executable
        self.timeout = timeout
        self._available = None

    def scan_file(self, path: str) -> Dict[str, Any]:
        """
        Scan a single file.

        Raises:
            ScanError: If the scanner process cannot be run or times out
        """
        if self._available is False:
            return _result(True, 'Malware scanner not available on this system', skipped=True)

        if not os.path.exists(path):
            return _result(False, 'File not found', error='FILE_NOT_FOUND')

        logger.debug(f"Scanning file: {path}")

        try:
            completed = subprocess.run(
                [self.executable, '--no-summary', path],
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except FileNotFoundError:
            logger.warning(f"Malware scanner executable not found: {self.executable}")
            self._available = False
            return _result(True, 'Malware scanner not available on this system', skipped=True)
        except subprocess.TimeoutExpired:
            raise ScanError(f"Scan of {path} timed out after {self.timeout}s")
        except OSError as e:
            raise ScanError(f"Failed to run {self.executable}: {e}")

        self._available = True

        if completed.returncode == 0:
            return _result(True, 'No threats detected')

        if completed.returncode == 1:
            threat = self._parse_threat(completed.stdout) or 'Unknown threat'
            logger.warning(f"Threat detected in {path}: {threat}")
            return _result(False, f"Threat detected: {threat}", threat=threat)

        message = (completed.stderr or completed.stdout).strip() or f"exit code {completed.returncode}"
        return _result(False, f"Scan failed: {message}", error='SCAN_FAILED')

    @staticmethod
    def _parse_threat(output: str) -> Optional[str]:
        """Extract the signature name from a '<path>: <name> FOUND' line."""
        for line in output.splitlines():
            line = line.strip()
            if line.endswith(' FOUND') and ': ' in line:
                return line.rsplit(': ', 1)[1][:-len(' FOUND')].strip()
        return None


def create_scanner(name: str = 'none', executable: str = 'clamscan', timeout: int = 60):
    """
    Factory function to create a scanner.

    Args:
        name: 'none' or 'clamav'
        executable: Scanner binary (clamav only)
        timeout: Per-file scan timeout in seconds (clamav only)

    Raises:
        ValueError: If name is invalid
    """
    if name in (None, '', 'none'):
        return NullScanner()
    elif name == 'clamav':
        return ClamAVScanner(executable=executable, timeout=timeout)
    else:
        raise ValueError(f"Invalid scanner: {name}")
