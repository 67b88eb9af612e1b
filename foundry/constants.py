"""Global constants and path configuration for Foundry."""

from __future__ import annotations

import os
import re

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

API_VERSION = "foundry.cofront.xyz/v1alpha1"
KIND_VIRTUAL_MACHINE = "VirtualMachine"

# Domain metadata
METADATA_NAMESPACE = "http://foundry.cofront.xyz/v1alpha1"
METADATA_KEY = "foundry-vm-spec"

# Storage pools owned by foundry
IMAGES_POOL = "foundry-images"
VMS_POOL = "foundry-vms"
DEFAULT_IMAGES_POOL_PATH = "/var/lib/libvirt/images/foundry/images"
DEFAULT_VMS_POOL_PATH = "/var/lib/libvirt/images/foundry/vms"
RESERVED_POOLS = frozenset({IMAGES_POOL, VMS_POOL})
POOL_TYPE_DIR = "dir"

# Volume kinds and formats
VOLUME_KIND_BOOT = "boot"
VOLUME_KIND_DATA = "data"
VOLUME_KIND_CLOUDINIT = "cloudinit"
VOLUME_KIND_BASE_IMAGE = "base-image"
VOLUME_KINDS = {VOLUME_KIND_BOOT, VOLUME_KIND_DATA, VOLUME_KIND_CLOUDINIT, VOLUME_KIND_BASE_IMAGE}
FORMAT_QCOW2 = "qcow2"
FORMAT_RAW = "raw"
VOLUME_FORMATS = {FORMAT_QCOW2, FORMAT_RAW}
IMAGE_EXTENSIONS = {".qcow2": FORMAT_QCOW2, ".raw": FORMAT_RAW}
RAW_BACKING_EXTENSIONS = (".raw", ".img")

GIB = 1024 ** 3
VOLUME_MODE = "0644"
POOL_MODE = "0755"

# Image magic bytes
QCOW2_MAGIC = b"QFI\xfb"
MBR_SIGNATURE = b"\x55\xaa"
MBR_SIGNATURE_OFFSET = 510

# QEMU service identity
QEMU_CONF_PATH = "/etc/libvirt/qemu.conf"
QEMU_USER_CANDIDATES = ("qemu", "libvirt-qemu")
QEMU_GROUP_CANDIDATES = ("qemu", "kvm", "libvirt-qemu")
DEFAULT_QEMU_UID = 107
DEFAULT_QEMU_GID = 107

# Timeouts (seconds)
DEFAULT_CONNECT_TIMEOUT = 5
DEFAULT_SHUTDOWN_TIMEOUT = 5
SHUTDOWN_POLL_INTERVAL = 0.5

# libvirt enums, mirrored so that core modules stay free of the bindings
DOMAIN_STATE_NOSTATE = 0
DOMAIN_STATE_RUNNING = 1
DOMAIN_STATE_BLOCKED = 2
DOMAIN_STATE_PAUSED = 3
DOMAIN_STATE_SHUTDOWN = 4
DOMAIN_STATE_SHUTOFF = 5
DOMAIN_STATE_CRASHED = 6
DOMAIN_STATE_PMSUSPENDED = 7
DOMAIN_UNDEFINE_NVRAM = 4

POOL_STATES = {
    0: "inactive",
    1: "building",
    2: "running",
    3: "degraded",
    4: "inaccessible",
}
POOL_STATE_RUNNING = 2

# Phases
PHASE_PENDING = "Pending"
PHASE_CREATING = "Creating"
PHASE_RUNNING = "Running"
PHASE_STOPPING = "Stopping"
PHASE_STOPPED = "Stopped"
PHASE_FAILED = "Failed"

# Conditions
CONDITION_READY = "Ready"
CONDITION_STORAGE_PROVISIONED = "StorageProvisioned"
CONDITION_NETWORK_CONFIGURED = "NetworkConfigured"
CONDITION_CLOUD_INIT_READY = "CloudInitReady"
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Naming
MAC_PREFIX = "be:ef"
INTERFACE_PREFIX = "vm"
VM_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
FQDN_RE = re.compile(r"^([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}$")
DEVICE_NAME_RE = re.compile(r"^vd[b-z]$")
SSH_KEY_PREFIXES = ("ssh-rsa ", "ssh-ed25519 ", "ecdsa-sha2-", "sk-ssh-ed25519@", "sk-ecdsa-sha2-")

CLOUD_INIT_VOLUME_LABEL = "cidata"
DOWNLOAD_CHUNK_SIZE = 1024 * 256
UPLOAD_CHUNK_SIZE = 1024 * 1024
