"""Debian preseed answer file generation."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from vbox_cluster.logging import get_logger

log = get_logger(source=__name__, tags=["preseed"])

# Single-partition recipe; "$primary{ }" etc. are partman syntax, not
# format placeholders.
_EXPERT_RECIPE = (
    "boot-root :: \\\n"
    "      100 500 10000 ext4 \\\n"
    "      $primary{ } $bootable{ } \\\n"
    "      method{ format } format{ } \\\n"
    "      use_filesystem{ } filesystem{ ext4 } \\\n"
    "      mountpoint{ / } \\\n"
    "      ."
)


@dataclass(frozen=True)
class AnswerFileParameters:
    """Inputs of the unattended-install answer file.

    The password ends up in the answer document in plaintext unless a
    pre-hashed ``password_crypted`` is supplied; that is inherent to preseed.
    """

    username: str
    password: str | None = None
    password_crypted: str | None = None
    full_name: str | None = None
    locale: str = "en_US.UTF-8"
    keymap: str = "us"
    timezone: str = "UTC"
    target_disk: str = "/dev/sda"
    partitioning: str = "regular"
    packages: tuple[str, ...] = ("openssh-server", "cloud-init")
    reboot_on_finish: bool = True
    mirror_hostname: str = "deb.debian.org"
    mirror_directory: str = "/debian"

    def __post_init__(self):
        if not self.password and not self.password_crypted:
            raise ValueError("An account password or password hash is required")


def render_answer_file(params: AnswerFileParameters) -> bytes:
    """Render the preseed document. Pure and deterministic."""
    full_name = params.full_name or params.username
    lines = [
        f"d-i debian-installer/locale string {params.locale}",
        f"d-i keyboard-configuration/xkb-keymap select {params.keymap}",
        f"d-i debian-installer/keymap select {params.keymap}",
        "d-i netcfg/choose_interface select auto",
        "d-i mirror/country string manual",
        f"d-i mirror/http/hostname string {params.mirror_hostname}",
        f"d-i mirror/http/directory string {params.mirror_directory}",
        "d-i mirror/http/proxy string",
        f"d-i time/zone string {params.timezone}",
        "d-i clock-setup/utc boolean true",
        f"d-i partman-auto/disk string {params.target_disk}",
        f"d-i partman-auto/method string {params.partitioning}",
        f"d-i partman-auto/expert_recipe string {_EXPERT_RECIPE}",
        "d-i partman-partitioning/confirm_write_new_label boolean true",
        "d-i partman/choose_partition select finish",
        "d-i partman/confirm boolean true",
        "d-i partman/confirm_nooverwrite boolean true",
        "d-i partman/confirm_write_partition boolean true",
        "d-i passwd/root-login boolean false",
        f"d-i passwd/user-fullname string {full_name}",
        f"d-i passwd/username string {params.username}",
    ]
    if params.password_crypted:
        lines.append(f"d-i passwd/user-password-crypted password {params.password_crypted}")
    else:
        lines.append(f"d-i passwd/user-password password {params.password}")
        lines.append(f"d-i passwd/user-password-again password {params.password}")
    lines += [
        "d-i passwd/user-default-groups string sudo",
        "d-i grub-installer/only_debian boolean true",
        "d-i grub-installer/bootdev string default",
        "tasksel tasksel/first multiselect standard",
        f"d-i pkgsel/include string {' '.join(params.packages)}",
        "d-i pkgsel/install-language-support boolean false",
        "popularity-contest popularity-contest/participate boolean false",
    ]
    if params.reboot_on_finish:
        lines.append("d-i finish-install/reboot_in_progress note")
    else:
        lines.append("d-i debian-installer/exit/poweroff boolean true")
    return ("\n".join(lines) + "\n").encode("utf-8")


def answer_checksum(data: bytes) -> str:
    """md5 of the answer document, as expected by preseed/file/checksum."""
    return hashlib.md5(data).hexdigest()


def write_answer_file(params: AnswerFileParameters, path: Path) -> bytes:
    """Render and write the answer file, returning the bytes written.

    The file is created owner-readable only since it holds credentials.
    Any OSError propagates and aborts the run.
    """
    data = render_answer_file(params)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, 0o600)
    if not params.password_crypted:
        log.warning(f"{path} contains the account password in plaintext")
    log.info(f"Preseed file generated: {path} ({len(data)} bytes)")
    return data
