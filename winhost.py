#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os, subprocess, tempfile, time, ctypes

import requests

# ---------------- utils ----------------
def is_admin():
    try:
        return ctypes.windll.shell32.IsUserAnAdmin()
    except Exception:
        return False

def run(cmd, check=True, timeout=None, shell=None, interactive=False):
    """Run cmd (list or str), return CompletedProcess; raise on error if check.

    With interactive=True the child inherits the console (no capture), for
    tools that prompt the user.
    """
    if shell is None:
        shell = isinstance(cmd, str)
    print(f"-> {cmd}")
    if interactive:
        rc = subprocess.call(cmd, shell=shell, timeout=timeout)
        if check and rc != 0:
            raise RuntimeError(f"Command failed ({rc}): {cmd}")
        return subprocess.CompletedProcess(cmd, rc, "", "")
    p = subprocess.Popen(cmd, shell=shell, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    try:
        out, err = p.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        try:
            p.terminate()
            time.sleep(1)
            p.kill()
        except Exception:
            pass
        raise RuntimeError(f"Timed out: {cmd}")
    if check and p.returncode != 0:
        print(out); print(err)
        raise RuntimeError(f"Command failed ({p.returncode}): {cmd}")
    return subprocess.CompletedProcess(cmd, p.returncode, out, err)

def powershell_command(script):
    return ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", script]


class WindowsHost:
    """Every OS touch point the remoting procedures use.

    Procedures only talk to the machine through this object so a fake can
    stand in for it.
    """

    def run(self, cmd, check=True, timeout=None, interactive=False):
        return run(cmd, check=check, timeout=timeout, interactive=interactive)

    def powershell(self, script, check=True):
        return run(powershell_command(script), check=check)

    def exists(self, path):
        return os.path.exists(path)

    def read_text(self, path):
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def write_text(self, path, text):
        os.makedirs(os.path.dirname(path), exist_ok=True)
        # sshd on Windows wants CRLF and no BOM
        with open(path, "w", encoding="utf-8", newline="\r\n") as f:
            f.write(text)

    def set_registry_dword(self, path, name, value):
        import winreg
        key = winreg.CreateKeyEx(winreg.HKEY_LOCAL_MACHINE, path, 0, winreg.KEY_SET_VALUE)
        winreg.SetValueEx(key, name, 0, winreg.REG_DWORD, value)
        winreg.CloseKey(key)

    def download(self, url, dest):
        print(f"-> GET {url}")
        with requests.get(url, stream=True) as r:
            r.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=1024 * 1024):
                    if chunk:
                        f.write(chunk)
        return dest

    def home_dir(self):
        return os.path.expanduser("~")

    def temp_dir(self):
        return tempfile.gettempdir()
