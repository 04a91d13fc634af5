# SPDX-License-Identifier: LGPL-3.0-or-later
import unittest
from unittest.mock import Mock

from fakes.fake_logger import FakeLogger
from vchroot.core.exceptions import BackingStoreError
from vchroot.session.resources import (
    ActivatedVolumeGroup,
    BackingStore,
    EncryptedVolume,
    GuiGrant,
    MountKind,
    MountPoint,
    ResourceStack,
)
from vchroot.session.teardown import TeardownEngine


class TestTeardownEngine(unittest.TestCase):
    def setUp(self):
        self.released = []
        self.evictor = Mock()
        self.evictor.evict_users.return_value = []
        self.evictor.evict_chroot_processes.return_value = []

        def rec(handle):
            self.released.append(handle)

        self.releasers = {
            BackingStore: rec,
            EncryptedVolume: rec,
            ActivatedVolumeGroup: rec,
            MountPoint: rec,
            GuiGrant: rec,
        }
        self.stack = ResourceStack()
        self.bs = self.stack.push(BackingStore("/img/a.qcow2", "/dev/nbd0", "qcow2"))
        self.luks = self.stack.push(EncryptedVolume("/dev/nbd0p3", "vchroot-luks1_0"))
        self.vg = self.stack.push(ActivatedVolumeGroup("vg0"))
        self.root = self.stack.push(MountPoint("/mnt/chroot", "/dev/vg0/root", MountKind.ROOT, "ext4"))
        self.proc = self.stack.push(MountPoint("/mnt/chroot/proc", "/proc", MountKind.VIRTUAL, "proc"))
        self.bind = self.stack.push(MountPoint("/mnt/chroot/src", "/home/alice/src", MountKind.BIND, "bind"))
        self.gui = self.stack.push(GuiGrant(xhost_granted=True))

    def _engine(self):
        return TeardownEngine(FakeLogger(), self.releasers, evictor=self.evictor)

    def test_releases_in_reverse_acquisition_order(self):
        failures = self._engine().teardown(self.stack)
        self.assertEqual(failures, [])
        self.assertEqual(self.released, [self.gui, self.bind, self.proc, self.root, self.vg, self.luks, self.bs])
        self.assertEqual(len(self.stack), 0)

    def test_evicts_only_disk_backed_mounts(self):
        self._engine().teardown(self.stack)
        self.evictor.evict_chroot_processes.assert_called_once_with("/mnt/chroot")
        self.assertEqual([c.args[0] for c in self.evictor.evict_users.call_args_list], ["/mnt/chroot"])

    def test_shared_mount_evicts_by_path_only(self):
        stack = ResourceStack()
        stack.push(MountPoint("/mnt/chroot", "/dev/sdb2", MountKind.ROOT, "ext4", shared=True))
        stack.push(MountPoint("/mnt/chroot/boot", "/dev/sdb1", MountKind.COMPANION))
        self._engine().teardown(stack)
        self.assertEqual(
            [(c.args, c.kwargs) for c in self.evictor.evict_users.call_args_list],
            [(("/mnt/chroot/boot",), {}), (("/mnt/chroot",), {"path_scoped": True})],
        )

    def test_failures_collected_and_walk_continues(self):
        def bad_detach(handle):
            raise BackingStoreError(code=1, msg=f"could not detach backing store node {handle.device_node}")

        def bad_umount(handle):
            if handle.kind is MountKind.ROOT:
                raise RuntimeError("target is busy")
            self.released.append(handle)

        self.releasers[BackingStore] = bad_detach
        self.releasers[MountPoint] = bad_umount
        failures = self._engine().teardown(self.stack)

        self.assertEqual(len(failures), 2)
        self.assertIn("/mnt/chroot", failures[0].resource)
        self.assertIn("target is busy", failures[0].error)
        self.assertEqual(failures[1].error, "could not detach backing store node /dev/nbd0")
        # everything else still released
        self.assertEqual(self.released, [self.gui, self.bind, self.proc, self.vg, self.luks])

    def test_second_call_is_noop(self):
        engine = self._engine()
        engine.teardown(self.stack)
        self.stack.push(BackingStore("/img/b.qcow2", "/dev/nbd1", "qcow2"))
        self.released.clear()
        self.assertEqual(engine.teardown(self.stack), [])
        self.assertEqual(self.released, [])
        self.assertTrue(engine.done)

    def test_missing_releaser_is_a_failure(self):
        del self.releasers[GuiGrant]
        failures = self._engine().teardown(self.stack)
        self.assertEqual(len(failures), 1)
        self.assertIn("GuiGrant", failures[0].error)

    def test_eviction_errors_do_not_stop_release(self):
        self.evictor.evict_users.side_effect = OSError("proc vanished")
        self.assertEqual(self._engine().teardown(self.stack), [])
        self.assertIn(self.root, self.released)

    def test_empty_stack(self):
        self.assertEqual(TeardownEngine(FakeLogger(), {}).teardown(ResourceStack()), [])


if __name__ == "__main__":
    unittest.main()
