# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vchroot/cli/help_texts.py
from __future__ import annotations

# NOTE:
# Pure help text for the argparse epilog. Keep it copy/paste runnable.

CONFIG_EXAMPLE = r"""# vchroot configuration examples
#
# Run:
# sudo vchroot --config /etc/vchroot.conf
#
# Merge multiple configs (later overrides earlier; CLI overrides both):
# sudo vchroot --config base.yaml --config host.conf --gui
#
# Unattended (no prompts, config values only):
# sudo vchroot --config rescue.yaml --quiet
#
# --------------------------------------------------------------------------------------
# Legacy shell-style file (KEY=value, arrays as KEY=(a b c))
# --------------------------------------------------------------------------------------
# ROOT_DEVICE="/dev/sdb2"
# ROOT_MOUNT="/mnt/chroot"
# EFI_PART="/dev/sdb1"
# BOOT_PART=""
# ADDITIONAL_MOUNTS=("/srv/src:/usr/src:bind" "/dev/sdc1:/home")
# CUSTOM_SHELL="/bin/zsh"
# ENABLE_GUI_SUPPORT=false
# CHROOT_USER="alice"
#
# --------------------------------------------------------------------------------------
# YAML (keys are case-insensitive)
# --------------------------------------------------------------------------------------
# virtual_image: /var/lib/images/broken.qcow2   # attach through qemu-nbd
# root_mount: /mnt/rescue
# luks_keyfile: /root/keys/broken.key          # or luks_passphrase_env: VCHROOT_PASS
# copy_host_files: true                        # resolv.conf + hosts, restored on exit
# additional_mounts:
#   - /srv/data:/mnt/data:bind
"""

FEATURE_SUMMARY = r"""  - Physical devices or disk images (qcow2, vmdk, vdi, vhd/vhdx, raw) via qemu-nbd
  - LUKS unlock (prompt, key file or env var) and LVM activation with root-LV detection
  - Btrfs root subvolume probing (@, @root, root, then any subvolume found)
  - /proc, /sys, /dev, /dev/pts, /run and /tmp inside the chroot, plus extra mounts
  - Everything is released in reverse order on exit, error, SIGINT or SIGTERM
  - Exit codes: 0 ok, 1 setup/launch failure, 2 cleanup left resources behind
"""
