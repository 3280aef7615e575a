#!/usr/bin/env python3
"""
Remote fabric dump collection
Runs iblinkinfo on a subnet manager host over SSH

Copyright (c) 2025 Darren Soothill
All rights reserved.
"""

import logging
from typing import List, Optional, Tuple
from dataclasses import dataclass

import paramiko

DEFAULT_COMMAND = 'iblinkinfo --line'


class CollectionError(Exception):
    """The fabric dump could not be retrieved"""


@dataclass
class FabricHost:
    """SSH settings of a host attached to the fabric"""
    hostname: str
    username: str
    password: Optional[str] = None
    ssh_key: Optional[str] = None
    port: int = 22
    command: str = DEFAULT_COMMAND


class FabricCollector:
    """Fetches link dumps from a fabric host"""

    def __init__(self, host: FabricHost, timeout: int = 30):
        self.host = host
        self.timeout = timeout
        self.client = None
        self.logger = logging.getLogger(__name__)

    def connect(self):
        """Open the SSH session, raise CollectionError on failure"""
        self.client = paramiko.SSHClient()
        # Fabric management hosts are usually not in known_hosts
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_params = {
            'hostname': self.host.hostname,
            'username': self.host.username,
            'port': self.host.port,
            'timeout': self.timeout,
        }
        if self.host.ssh_key:
            connect_params['key_filename'] = self.host.ssh_key
            self.logger.debug(f"Using SSH key authentication: {self.host.ssh_key}")
        elif self.host.password:
            connect_params['password'] = self.host.password
            connect_params['look_for_keys'] = False
            connect_params['allow_agent'] = False
        else:
            self.logger.debug("No credentials given, using SSH agent and default keys")

        try:
            self.client.connect(**connect_params)
        except paramiko.AuthenticationException as e:
            self.close()
            raise CollectionError(f"Authentication failed for {self.host.username}@{self.host.hostname}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise CollectionError(f"SSH connection to {self.host.hostname} failed: {e}") from e

        self.logger.debug(f"Connected to {self.host.hostname}:{self.host.port}")

    def execute_command(self, command: str) -> Tuple[str, str, int]:
        """Run command, return (stdout, stderr, exit code)"""
        if not self.client:
            raise CollectionError("Not connected")

        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=self.timeout)
            # Drain output before waiting, a full channel window blocks the remote command
            stdout_data = stdout.read().decode('utf-8', errors='replace')
            stderr_data = stderr.read().decode('utf-8', errors='replace')
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CollectionError(f"Error executing '{command}' on {self.host.hostname}: {e}") from e

        return stdout_data, stderr_data, exit_code

    def collect(self) -> List[str]:
        """Connect, run the dump command and return its output lines"""
        self.logger.info(f"Collecting fabric links from {self.host.hostname} ({self.host.command})...")
        self.connect()
        try:
            stdout, stderr, exit_code = self.execute_command(self.host.command)
        finally:
            self.close()

        if exit_code != 0:
            raise CollectionError(
                f"'{self.host.command}' failed on {self.host.hostname} "
                f"(exit code {exit_code}): {stderr.strip()}")

        lines = stdout.splitlines()
        self.logger.info(f"Received {len(lines)} lines from {self.host.hostname}")
        return lines

    def close(self):
        """Close SSH connection"""
        if self.client:
            self.client.close()
            self.client = None
            self.logger.debug(f"Closed connection to {self.host.hostname}")
