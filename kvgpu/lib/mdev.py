#!/usr/bin/env python3

# mdev.py - kvgpu function library, mediated device profiles and instances
# Part of the kvgpu KVM vGPU host management tool
#
#    Copyright (C) 2024 The kvgpu authors
#
#    This program is free software: you can redistribute it and/or modify
#    it under the terms of the GNU General Public License as published by
#    the Free Software Foundation, version 3.
#
#    This program is distributed in the hope that it will be useful,
#    but WITHOUT ANY WARRANTY; without even the implied warranty of
#    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
#    GNU General Public License for more details.
#
#    You should have received a copy of the GNU General Public License
#    along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
###############################################################################

import os

import kvgpu.lib.common as common


PROFILE_UNKNOWN = "unknown"


#
# Inventory objects
#
class MdevProfile(object):
    """
    A vGPU profile (mdev type) supported by one PCI function
    """

    def __init__(
        self, type_id, bdf, name, description, device_api, available_instances
    ):
        self.type_id = type_id
        self.bdf = bdf
        self.name = name
        self.description = description
        self.device_api = device_api
        self.available_instances = available_instances

    def to_dict(self):
        return {
            "type": self.type_id,
            "bdf": self.bdf,
            "name": self.name,
            "description": self.description,
            "device_api": self.device_api,
            "available_instances": self.available_instances,
        }


class MdevInstance(object):
    """
    An instantiated mediated device

    Only the UUID is stored; the profile and parent function are derived from
    the mdev_type link the first time they are requested.
    """

    def __init__(self, uuid, path):
        self.uuid = uuid
        self.path = path
        self._type_path = None

    def _resolve_type_path(self):
        if self._type_path is None:
            type_link = os.path.join(self.path, "mdev_type")
            if os.path.islink(type_link):
                try:
                    self._type_path = os.path.realpath(type_link)
                except OSError:
                    self._type_path = ""
            else:
                self._type_path = ""
        return self._type_path

    @property
    def profile(self):
        type_path = self._resolve_type_path()
        if not type_path:
            return PROFILE_UNKNOWN
        return os.path.basename(type_path)

    @property
    def parent(self):
        # <parent bdf>/mdev_supported_types/<type>
        type_path = self._resolve_type_path()
        if not type_path:
            return PROFILE_UNKNOWN
        parent = os.path.basename(os.path.dirname(os.path.dirname(type_path)))
        if not common.validateBDF(parent):
            return PROFILE_UNKNOWN
        return parent

    def to_dict(self):
        return {
            "uuid": self.uuid,
            "profile": self.profile,
            "parent": self.parent,
        }


#
# Path helpers
#
def get_profile_catalog_path(config, bdf):
    return common.sysfs_path(
        config, "bus", "pci", "devices", bdf, "mdev_supported_types"
    )


def get_instance_registry_path(config):
    return common.sysfs_path(config, "bus", "mdev", "devices")


#
# Profile catalog
#
def list_profiles(config, bdf, warnings=None):
    """
    List the mdev profiles supported by PCI function bdf

    A function without a profile catalog (no vGPU driver bound) has no
    profiles; that is not an error. Missing or malformed attributes fall back
    to "Unknown" or 0 without affecting sibling profiles.
    """
    catalog_path = get_profile_catalog_path(config, bdf)
    if not os.path.isdir(catalog_path):
        return list()

    try:
        entries = sorted(os.listdir(catalog_path))
    except OSError:
        return list()

    profile_list = list()
    for type_id in entries:
        profile_path = os.path.join(catalog_path, type_id)
        if not os.path.isdir(profile_path):
            continue

        name = common.read_attribute(os.path.join(profile_path, "name"))
        if not name:
            name = common.UNKNOWN
        description = common.read_attribute(os.path.join(profile_path, "description"))
        if not description:
            description = common.UNKNOWN
        device_api = common.read_attribute(os.path.join(profile_path, "device_api"))
        if not device_api:
            device_api = common.UNKNOWN
        available_instances = common.read_int_attribute(
            os.path.join(profile_path, "available_instances"),
            default=0,
            warnings=warnings,
        )

        profile_list.append(
            MdevProfile(
                type_id, bdf, name, description, device_api, available_instances
            )
        )

    return profile_list


def get_profile(config, bdf, profile, warnings=None):
    for mdev_profile in list_profiles(config, bdf, warnings):
        if mdev_profile.type_id == profile:
            return mdev_profile
    return None


#
# Instance registry
#
def list_instances(config):
    """
    List instantiated mediated devices

    Raises ToolUnavailable if the mdev bus does not exist at all.
    """
    registry_path = get_instance_registry_path(config)
    if not os.path.isdir(registry_path):
        raise common.ToolUnavailable("mdev bus", f"{registry_path} does not exist")

    instance_list = list()
    for mdev_uuid in sorted(os.listdir(registry_path)):
        instance_list.append(
            MdevInstance(mdev_uuid, os.path.join(registry_path, mdev_uuid))
        )

    return instance_list


def _registry_name(mdev_uuid):
    # The registry names devices by the canonical lowercase hyphenated form
    if common.validateUUID(mdev_uuid):
        return common.normalizeUUID(mdev_uuid)
    return str(mdev_uuid).lower()


def instance_exists(config, mdev_uuid):
    return os.path.lexists(
        os.path.join(get_instance_registry_path(config), _registry_name(mdev_uuid))
    )


def get_instance(config, mdev_uuid):
    if not instance_exists(config, mdev_uuid):
        return None
    mdev_uuid = _registry_name(mdev_uuid)
    return MdevInstance(
        mdev_uuid, os.path.join(get_instance_registry_path(config), mdev_uuid)
    )


def create_instance(config, bdf, profile, mdev_uuid, logger=None):
    """
    Create a mediated device of type profile on function bdf with mdev_uuid

    Returns a list of pre-condition warnings. Raises a CreateError subclass if
    the request is refused before or during the write. A zero capacity is only
    a warning: the driver makes the final decision when the UUID is written.
    """
    if not common.validateUUID(mdev_uuid):
        raise common.InvalidUUID(mdev_uuid)
    mdev_uuid = common.normalizeUUID(mdev_uuid)

    if instance_exists(config, mdev_uuid):
        raise common.DuplicateUUID(mdev_uuid)

    profile_path = os.path.join(get_profile_catalog_path(config, bdf), profile)
    if not os.path.isdir(profile_path):
        raise common.ProfileNotFound(bdf, profile)

    warnings = list()
    available_instances = common.read_int_attribute(
        os.path.join(profile_path, "available_instances"), default=0
    )
    if available_instances < 1:
        warnings.append(
            f"Profile {profile} on {bdf} reports no available instances; "
            "the driver will likely reject this request"
        )
        if logger is not None:
            logger.out(warnings[-1], state="w")

    if logger is not None:
        logger.out(
            f"Writing {mdev_uuid} to {profile_path}/create",
            state="d",
        )

    try:
        common.write_control_file(os.path.join(profile_path, "create"), mdev_uuid)
    except OSError as e:
        raise common.DriverRejected(str(e))

    return warnings


def remove_instance(config, mdev_uuid, logger=None):
    """
    Remove the mediated device mdev_uuid via its remove control file
    """
    if not common.validateUUID(mdev_uuid):
        raise common.InvalidUUID(mdev_uuid)
    mdev_uuid = common.normalizeUUID(mdev_uuid)

    if not instance_exists(config, mdev_uuid):
        raise common.InstanceNotFound(mdev_uuid)

    remove_path = os.path.join(
        get_instance_registry_path(config), mdev_uuid, "remove"
    )

    if logger is not None:
        logger.out(f"Writing 1 to {remove_path}", state="d")

    try:
        common.write_control_file(remove_path, "1")
    except OSError as e:
        raise common.DriverRejected(str(e))
