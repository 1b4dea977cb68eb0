#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Toggle remote management (WinRM and SSH remoting) on a Windows perf host or container.

Modes (exactly one):
  --setup                                  enable WinRM / PowerShell remoting on this host
  --cleanup                                undo --setup and tear down leftover WinRM state
  --setup-ssh                              prepare this host for PowerShell-over-SSH
  --setup-container --authorized-key KEY   enable PowerShell-over-SSH inside a container

Every step is "configure it unless it is already there", so re-running is safe.
Nothing is retried or rolled back: a failing step stops the run and leaves
earlier changes in place.
"""

import os, re, sys, argparse
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

from winhost import WindowsHost, is_admin

DEFAULT_PWSH_VERSION = "7.4.6"
NETWORK_PROFILE_ERROR = "network connection types on this machine is set to Public"
HTTP_LISTENER_LINE = re.compile(r"^\s*Transport = HTTP\s*$", re.MULTILINE)
PWSH_URL_TEMPLATE ="https://github.com/PowerShell/PowerShell/releases/download/v{v}/PowerShell-{v}-win-x64.msi"


@dataclass
class Settings:
    # WinRM
    firewall_rule: str = "Windows Remote Management (HTTP-In)"
    firewall_group: str = "Windows Remote Management"
    winrm_port: int = 5985
    winrm_service: str = "winrm"
    http_listener: str = "winrm/config/listener?Address=*+Transport=HTTP"
    policy_key: str = r"SOFTWARE\Microsoft\Windows\CurrentVersion\Policies\System"
    policy_value: str = "LocalAccountTokenFilterPolicy"
    # PowerShell 7 runtime
    pwsh_version: str = DEFAULT_PWSH_VERSION
    pwsh_url: Optional[str] = None
    msi_flags: tuple = (
        "ADD_EXPLORER_CONTEXT_MENU_OPENPOWERSHELL=1",
        "ENABLE_PSREMOTING=1",
        "REGISTER_MANIFEST=1",
        "ADD_PATH=1",
    )
    # OpenSSH
    key_name: str = "id_ed25519"
    sshd_capability: str = "OpenSSH.Server~~~~0.0.1.0"
    sshd_config: str = r"C:\ProgramData\ssh\sshd_config"
    admin_keys: str = r"C:\ProgramData\ssh\administrators_authorized_keys"
    key_owners: tuple = ("Administrators", "SYSTEM")
    # sshd_config splits Subsystem arguments on whitespace, so the directive
    # points at pwsh through the 8.3 alias of "Program Files".
    short_program_files: str = r"C:\progra~1"
    program_files: str = r"C:\Program Files"
    subsystem_line: Optional[int] = None

    @property
    def pwsh_major(self):
        return self.pwsh_version.split(".")[0]

    @property
    def download_url(self):
        return self.pwsh_url or PWSH_URL_TEMPLATE.format(v=self.pwsh_version)

    @property
    def msi_name(self):
        return urlsplit(self.download_url).path.rstrip("/").rsplit("/", 1)[-1]

    @property
    def pwsh_dir(self):
        return self.program_files + "\\PowerShell\\" + self.pwsh_major

    @property
    def subsystem_directive(self):
        return f"Subsystem powershell c:/progra~1/powershell/{self.pwsh_major}/pwsh.exe -sshs -NoLogo -NoProfile"


# ---------------- WinRM ----------------
def enable_host_remoting(host, settings):
    print("\n=== Opening firewall for WinRM ===")
    host.run(fr'netsh advfirewall firewall add rule name="{settings.firewall_rule}" dir=in action=allow protocol=TCP localport={settings.winrm_port} profile=any')

    print("\n=== Enabling PowerShell remoting ===")
    # Public network profiles make this complain; TrustedHosts below covers us.
    p = host.powershell("Enable-PSRemoting -Force -SkipNetworkProfileCheck -ErrorAction Stop", check=False)
    if p.returncode != 0:
        output = (p.stdout or "") + (p.stderr or "")
        # PowerShell wraps error records to the console width
        if NETWORK_PROFILE_ERROR not in " ".join(output.split()):
            print(output)
            raise RuntimeError(f"Command failed ({p.returncode}): Enable-PSRemoting")
        print("Network profile is Public (continuing).")

    print("\n=== Trusting all peers ===")
    # the harness addresses machines by IP, not by domain identity
    host.powershell(r"Set-Item WSMan:\localhost\Client\TrustedHosts -Value '*' -Force")


def cleanup_remoting(host, settings):
    print("\n=== Clearing TrustedHosts ===")
    host.powershell(r"Set-Item WSMan:\localhost\Client\TrustedHosts -Value '' -Force", check=False)

    print("\n=== Disabling PowerShell remoting ===")
    host.powershell("Disable-PSRemoting -Force", check=False)

    print("\n=== Removing WinRM HTTP listener ===")
    listeners = host.run("winrm enumerate winrm/config/listener", check=False)
    if HTTP_LISTENER_LINE.search(listeners.stdout or ""):
        host.run(f'winrm delete {settings.http_listener}', check=False)
    else:
        print("No HTTP listener found.")

    print("\n=== Stopping and disabling WinRM service ===")
    host.run(f"sc stop {settings.winrm_service}", check=False)
    host.run(f"sc config {settings.winrm_service} start= disabled", check=False)

    print("\n=== Resetting LocalAccountTokenFilterPolicy ===")
    try:
        host.set_registry_dword(settings.policy_key, settings.policy_value, 0)
    except OSError as e:
        print(f"Registry update failed (continuing): {e}")

    print("\n=== Removing WinRM firewall rules ===")
    host.powershell(f"Remove-NetFirewallRule -DisplayGroup '{settings.firewall_group}' -ErrorAction SilentlyContinue", check=False)
    host.run(fr'netsh advfirewall firewall delete rule name="{settings.firewall_rule}"', check=False)


# ---------------- PowerShell 7 ----------------
def ensure_runtime(host, settings):
    print(f"\n=== Ensuring PowerShell {settings.pwsh_version} ===")
    if host.exists(settings.pwsh_dir):
        print(f"{settings.pwsh_dir} present (skipping install).")
        return
    msi = os.path.join(host.temp_dir(), settings.msi_name)
    host.download(settings.download_url, msi)
    host.run(["msiexec", "/package", msi, "/quiet", *settings.msi_flags])


# ---------------- SSH ----------------
def key_paths(host, settings):
    private = os.path.join(host.home_dir(), ".ssh", settings.key_name)
    return private, private + ".pub"


def enable_ssh_on_host(host, settings):
    private, public = key_paths(host, settings)

    print("\n=== Ensuring SSH key pair ===")
    if host.exists(private) and host.exists(public):
        print(f"Reusing {private}")
    else:
        host.run(["ssh-keygen", "-t", "ed25519", "-f", private], interactive=True)

    print("\n=== Registering key with ssh-agent ===")
    host.run("sc config ssh-agent start= auto")
    p = host.run("sc start ssh-agent", check=False)
    # 1056 = already running
    if p.returncode not in (0, 1056):
        print(p.stdout); print(p.stderr)
        raise RuntimeError(f"Command failed ({p.returncode}): sc start ssh-agent")
    host.run(["ssh-add", private])

    ensure_runtime(host, settings)

    key = host.read_text(public).strip()
    print("\n=== Public key ===")
    print(key)
    print("\nRun this inside each container:")
    print(f'  python configure_remoting.py --setup-container --authorized-key "{key}"')
    return key


def sshd_installed(host, settings):
    info = host.run(f"dism /online /Get-CapabilityInfo /CapabilityName:{settings.sshd_capability}", check=False)
    return info.returncode == 0 and "State : Installed" in (info.stdout or "")


def patch_subsystem_directive(lines: List[str], directive: str, line_index: Optional[int] = None) -> List[str]:
    """Return lines with directive present exactly once.

    line_index pins the directive to a fixed line (raises IndexError when the
    file is shorter). Otherwise the directive replaces an existing
    ``Subsystem powershell`` line, commented or not, or lands after the last
    ``Subsystem`` line, or at the end of the file.
    """
    if directive in lines:
        return list(lines)
    out = list(lines)
    if line_index is not None:
        if line_index < 0:
            raise IndexError(f"line index must not be negative: {line_index}")
        out[line_index] = directive
        return out

    def words(line):
        return line.strip().lstrip("#").split()

    # an active line wins over a commented template
    for commented in (False, True):
        for i, line in enumerate(out):
            w = words(line)
            if line.strip().startswith("#") != commented:
                continue
            if len(w) >= 2 and w[0].lower() == "subsystem" and w[1].lower() == "powershell":
                out[i] = directive
                return out
    last = None
    for i, line in enumerate(out):
        w = words(line)
        if w and w[0].lower() == "subsystem":
            last = i
    if last is None:
        out.append(directive)
    else:
        out.insert(last + 1, directive)
    return out


def ensure_subsystem_directive(host, settings):
    print("\n=== Ensuring powershell subsystem in sshd_config ===")
    lines = host.read_text(settings.sshd_config).splitlines()
    directive = settings.subsystem_directive
    if directive in lines:
        print("Directive already present.")
        return False
    patched = patch_subsystem_directive(lines, directive, settings.subsystem_line)
    host.write_text(settings.sshd_config, "\n".join(patched) + "\n")
    return True


def enable_ssh_on_container(host, settings, authorized_key):
    print("\n=== Ensuring OpenSSH server ===")
    if sshd_installed(host, settings):
        print("OpenSSH server already installed.")
    else:
        host.run(f"dism /online /Add-Capability /CapabilityName:{settings.sshd_capability}")

    print("\n=== Ensuring default sshd_config ===")
    if host.exists(settings.sshd_config):
        print(f"{settings.sshd_config} present.")
    else:
        # sshd writes its default config on first start
        host.run("net start sshd")
        host.run("net stop sshd")

    print("\n=== Ensuring administrators_authorized_keys ===")
    if host.exists(settings.admin_keys):
        print(f"{settings.admin_keys} present (leaving as is).")
    else:
        host.write_text(settings.admin_keys, authorized_key)
        grants = []
        for owner in settings.key_owners:
            grants += ["/grant", f"{owner}:F"]
        host.run(["icacls", settings.admin_keys, "/inheritance:r", *grants])

    ensure_runtime(host, settings)

    print(f"\n=== Ensuring {settings.short_program_files} junction ===")
    if host.exists(settings.short_program_files):
        print(f"{settings.short_program_files} present.")
    else:
        host.run(f'mklink /J "{settings.short_program_files}" "{settings.program_files}"')

    ensure_subsystem_directive(host, settings)


# ---------------- main ----------------
def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Toggle WinRM / SSH remoting for the perf harness (idempotent)")
    mode = ap.add_mutually_exclusive_group(required=True)
    mode.add_argument("--setup", action="store_true", help="Enable WinRM remoting on this host")
    mode.add_argument("--cleanup", action="store_true", help="Disable WinRM remoting and remove its listener and firewall rules")
    mode.add_argument("--setup-ssh", action="store_true", help="Create/register an SSH key and install PowerShell 7 on this host")
    mode.add_argument("--setup-container", action="store_true", help="Enable PowerShell-over-SSH inside a container")
    ap.add_argument("--authorized-key", help="Public key to trust for admin logins (with --setup-container)")
    ap.add_argument("--pwsh-version", default=os.environ.get("REMOTING_PWSH_VERSION", DEFAULT_PWSH_VERSION), help="PowerShell version to install")
    ap.add_argument("--pwsh-url", default=os.environ.get("REMOTING_PWSH_URL"), help="Override the PowerShell MSI download URL")
    ap.add_argument("--subsystem-line", type=int, help="Write the sshd Subsystem directive at this 0-based line instead of locating it")
    args = ap.parse_args(argv)
    if args.setup_container and not args.authorized_key:
        ap.error("--setup-container requires --authorized-key")
    if args.authorized_key and not args.setup_container:
        ap.error("--authorized-key is only valid with --setup-container")
    if args.subsystem_line is not None and args.subsystem_line < 0:
        ap.error("--subsystem-line must be 0 or greater")
    return args


def settings_from_args(args):
    return Settings(pwsh_version=args.pwsh_version, pwsh_url=args.pwsh_url, subsystem_line=args.subsystem_line)


def dispatch(args, host, settings):
    if args.setup:
        enable_host_remoting(host, settings)
    elif args.cleanup:
        cleanup_remoting(host, settings)
    elif args.setup_ssh:
        enable_ssh_on_host(host, settings)
    elif args.setup_container:
        enable_ssh_on_container(host, settings, args.authorized_key)


def main(argv=None):
    args = parse_args(argv)
    if os.name != "nt":
        print("Windows only."); sys.exit(1)
    if not is_admin():
        print("Please run in an elevated (Administrator) shell."); sys.exit(1)

    dispatch(args, WindowsHost(), settings_from_args(args))
    print("\n=== Done ===")

if __name__ == "__main__":
    main()
