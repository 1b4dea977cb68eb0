"""Shared pytest fixtures: an in-memory stand-in for a Windows machine."""

import re
import subprocess

import pytest

from configure_remoting import Settings

DEFAULT_SSHD_CONFIG = """# This is the sshd server system-wide configuration file.  See
# sshd_config(5) for more information.

#Port 22
#AddressFamily any
#ListenAddress 0.0.0.0
#ListenAddress ::

#HostKey __PROGRAMDATA__/ssh/ssh_host_rsa_key
#HostKey __PROGRAMDATA__/ssh/ssh_host_ecdsa_key
#HostKey __PROGRAMDATA__/ssh/ssh_host_ed25519_key

# Logging
#SyslogFacility AUTH
#LogLevel INFO

# Authentication:

#LoginGraceTime 2m
#PermitRootLogin prohibit-password
#StrictModes yes
#MaxAuthTries 6
#MaxSessions 10

#PubkeyAuthentication yes

AuthorizedKeysFile	.ssh/authorized_keys

#PasswordAuthentication yes
#PermitEmptyPasswords no

# override default of no subsystems
Subsystem	sftp	sftp-server.exe

Match Group administrators
       AuthorizedKeysFile __PROGRAMDATA__/ssh/administrators_authorized_keys
"""

HOST_PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHostKey perf@host"


class FakeHost:
    """Implements the WindowsHost surface over in-memory state."""

    def __init__(self, settings):
        self.settings = settings
        self.files = {}
        self.dirs = set()
        self.commands = []
        self.downloads = []
        self.registry = {}
        self.firewall_rules = []
        self.trusted_hosts = ""
        self.services = {"winrm": "demand", "ssh-agent": "disabled"}
        self.running = set()
        self.http_listener = False
        self.sshd_installed = False
        self.junctions = {}
        self.acls = {}
        self.fail_on = []
        self.errors = {}
        self.https_listener = False
        self.registry_error = None

    # -- WindowsHost surface --
    def run(self, cmd, check=True, timeout=None, interactive=False):
        text = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.commands.append(text)
        for needle in self.fail_on:
            if needle in text:
                if check:
                    raise RuntimeError(f"Command failed (1): {cmd}")
                return subprocess.CompletedProcess(cmd, 1, "", "failed")
        for needle, message in self.errors.items():
            if needle in text:
                if check:
                    raise RuntimeError(f"Command failed (1): {cmd}")
                return subprocess.CompletedProcess(cmd, 1, "", message)
        rc, out = self._apply(cmd, text)
        if check and rc != 0:
            raise RuntimeError(f"Command failed ({rc}): {cmd}")
        return subprocess.CompletedProcess(cmd, rc, out, "")

    def powershell(self, script, check=True):
        return self.run(["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", script], check=check)

    def exists(self, path):
        return path in self.files or path in self.dirs

    def read_text(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write_text(self, path, text):
        self.files[path] = text

    def set_registry_dword(self, path, name, value):
        if self.registry_error:
            raise self.registry_error
        self.registry[(path, name)] = value

    def download(self, url, dest):
        self.downloads.append((url, dest))
        self.files[dest] = "MSI"
        return dest

    def home_dir(self):
        return "/home/perf"

    def temp_dir(self):
        return "/tmp"

    # -- helpers --
    def ran(self, needle):
        return [c for c in self.commands if needle in c]

    def _apply(self, cmd, text):
        s = self.settings
        if "advfirewall firewall add rule" in text:
            self.firewall_rules.append(re.search(r'name="([^"]+)"', text).group(1))
        elif "advfirewall firewall delete rule" in text:
            name = re.search(r'name="([^"]+)"', text).group(1)
            if name not in self.firewall_rules:
                return 1, "No rules match the specified criteria."
            self.firewall_rules = [r for r in self.firewall_rules if r != name]
        elif "TrustedHosts" in text:
            self.trusted_hosts = re.search(r"-Value '([^']*)'", text).group(1)
        elif "Enable-PSRemoting" in text:
            self.services["winrm"] = "auto"
            self.running.add("winrm")
            self.http_listener = True
        elif "Remove-NetFirewallRule" in text:
            pass
        elif text.startswith("winrm enumerate"):
            out = ""
            if self.http_listener:
                out += "Listener\n    Address = *\n    Transport = HTTP\n    Port = 5985\n"
            if self.https_listener:
                out += "Listener\n    Address = *\n    Transport = HTTPS\n    Port = 5986\n"
            return 0, out
        elif text.startswith("winrm delete"):
            self.http_listener = False
        elif text.startswith("sc config"):
            m = re.match(r"sc config (\S+) start= (\S+)", text)
            self.services[m.group(1)] = m.group(2)
        elif text.startswith("sc start"):
            name = text.split()[-1]
            if name in self.running:
                return 1056, "An instance of the service is already running."
            self.running.add(name)
        elif text.startswith("sc stop"):
            self.running.discard(text.split()[-1])
        elif text.startswith("ssh-keygen"):
            private = cmd[-1]
            self.files[private] = "PRIVATE"
            self.files[private + ".pub"] = HOST_PUBLIC_KEY + "\n"
        elif text.startswith("msiexec"):
            self.dirs.add(s.pwsh_dir)
        elif "/Get-CapabilityInfo" in text:
            return 0, "State : Installed" if self.sshd_installed else "State : Not Present"
        elif "/Add-Capability" in text:
            self.sshd_installed = True
        elif text == "net start sshd":
            self.running.add("sshd")
            self.files.setdefault(s.sshd_config, DEFAULT_SSHD_CONFIG)
        elif text == "net stop sshd":
            self.running.discard("sshd")
        elif text.startswith("icacls"):
            self.acls[cmd[1]] = list(cmd[2:])
        elif text.startswith("mklink /J"):
            link, target = re.findall(r'"([^"]+)"', text)
            self.dirs.add(link)
            self.junctions[link] = target
        return 0, ""


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def host(settings):
    return FakeHost(settings)
