#!/usr/bin/env python3
DOCUMENTATION = '''
---
module: aws_rolesanywhere_profile
version_added: "0.1.0"
short_description: Wires an AWS CLI profile to aws_signing_helper for IAM Roles Anywhere.
description:
  - Writes a profile section into the AWS shared config file whose C(credential_process)
    calls C(aws_signing_helper credential-process) with the client certificate, private
    key, trust anchor, profile and role.
  - Checks that the trust anchor, profile and role ARNs belong together before writing.
  - Other sections, keys and comments in the file are left alone.
requirements: [ "aws_signing_helper on the managed host" ]
options:
  name:
    description: Name of the AWS CLI profile. C(default) writes the C([default]) section.
    required: true
  state:
    choices: [ present, absent ]
    default: present
  config_path:
    description: AWS shared config file.
    default: '~/.aws/config'
  certificate:
    description: Client certificate passed to the signing helper.
  private_key:
    description: Private key passed to the signing helper.
  trust_anchor_arn:
    description: ARN of the Roles Anywhere trust anchor.
  profile_arn:
    description: ARN of the Roles Anywhere profile.
  role_arn:
    description: ARN of the IAM role to assume.
  region:
    description: Region of the Roles Anywhere endpoint; must match the trust anchor.
  session_duration:
    description: Session length in seconds (900 to 43200).
  signing_helper:
    description: Path or name of the signing helper binary.
    default: aws_signing_helper
'''

EXAMPLES = '''
- name: Roles Anywhere profile for the deploy role
  aws_rolesanywhere_profile:
    name: deploy
    certificate: /etc/pki/rolesanywhere/client.pem
    private_key: /etc/pki/rolesanywhere/client.key
    trust_anchor_arn: "arn:aws:rolesanywhere:us-east-1:111122223333:trust-anchor/a1b2c3"
    profile_arn: "arn:aws:rolesanywhere:us-east-1:111122223333:profile/d4e5f6"
    role_arn: "arn:aws:iam::111122223333:role/Deploy"
    region: us-east-1
'''

RETURN = '''
section:
  description: Section header managed in the config file.
  type: str
credential_process:
  description: Command line written to credential_process.
  type: str
'''

import contextlib
import os
import re
import shlex
import tempfile

from ansible.module_utils.basic import AnsibleModule

ARN_RE = re.compile(
    r'^arn:(?P<partition>aws[a-z-]*):(?P<service>[a-z0-9-]+):(?P<region>[a-z0-9-]*):'
    r'(?P<account>\d{12}):(?P<resource>.+)$')
SECTION_RE = re.compile(r'^\s*\[([^\]]+)\]\s*$')
KEY_RE = re.compile(r'^([^=\s#;\[][^=]*?)\s*=')
PROFILE_NAME_RE = re.compile(r'[^\s\[\]#;]+')

MIN_SESSION_DURATION = 900
MAX_SESSION_DURATION = 43200

ARGUMENT_SPEC = {
    "name": {"required": True, "type": "str"},
    "state": {"type": "str", "default": "present", "choices": ["present", "absent"]},
    "config_path": {"type": "path", "default": "~/.aws/config"},
    "certificate": {"type": "path"},
    "private_key": {"type": "path"},
    "trust_anchor_arn": {"type": "str"},
    "profile_arn": {"type": "str"},
    "role_arn": {"type": "str"},
    "region": {"type": "str"},
    "session_duration": {"type": "int"},
    "signing_helper": {"type": "str", "default": "aws_signing_helper"},
}

REQUIRED_IF = [
    ("state", "present", ["certificate", "private_key", "trust_anchor_arn", "profile_arn", "role_arn"]),
]


class ProfileConfigError(Exception):
    pass


def parse_arn(arn, service, resource_type, label):
    match = ARN_RE.match(arn or '')
    if not match or match.group('service') != service or \
            not match.group('resource').startswith(resource_type + '/'):
        raise ProfileConfigError("%s %r is not a %s %s ARN" % (label, arn, service, resource_type))
    return match.groupdict()


def check_identifiers(data):
    """Make sure trust anchor, profile and role all point at the same account."""
    anchor = parse_arn(data['trust_anchor_arn'], 'rolesanywhere', 'trust-anchor', 'trust_anchor_arn')
    profile = parse_arn(data['profile_arn'], 'rolesanywhere', 'profile', 'profile_arn')
    role = parse_arn(data['role_arn'], 'iam', 'role', 'role_arn')

    for field in ('partition', 'region', 'account'):
        if anchor[field] != profile[field]:
            raise ProfileConfigError("trust anchor and profile disagree on %s: %s vs %s" % (
                field, anchor[field], profile[field]))
    for field in ('partition', 'account'):
        if role[field] != anchor[field]:
            raise ProfileConfigError("role %s is in %s %s, trust anchor in %s" % (
                data['role_arn'], field, role[field], anchor[field]))
    if data['region'] and data['region'] != anchor['region']:
        raise ProfileConfigError("region %s does not match trust anchor region %s" % (
            data['region'], anchor['region']))
    duration = data['session_duration']
    if duration is not None and not MIN_SESSION_DURATION <= duration <= MAX_SESSION_DURATION:
        raise ProfileConfigError("session_duration must be between %d and %d seconds, got %d" % (
            MIN_SESSION_DURATION, MAX_SESSION_DURATION, duration))


def credential_process(data):
    args = [
        data['signing_helper'], 'credential-process',
        '--certificate', data['certificate'],
        '--private-key', data['private_key'],
        '--trust-anchor-arn', data['trust_anchor_arn'],
        '--profile-arn', data['profile_arn'],
        '--role-arn', data['role_arn'],
    ]
    if data['region']:
        args += ['--region', data['region']]
    if data['session_duration'] is not None:
        args += ['--session-duration', str(data['session_duration'])]
    return ' '.join(shlex.quote(arg) for arg in args)


def section_name(name):
    if not PROFILE_NAME_RE.fullmatch(name or ''):
        raise ProfileConfigError("profile name %r must be non-empty without whitespace, brackets, '#' or ';'" % name)
    return name if name == 'default' else 'profile %s' % name


def find_section(lines, section):
    start = None
    for i, line in enumerate(lines):
        match = SECTION_RE.match(line)
        if not match:
            continue
        if start is not None:
            return start, i
        if match.group(1).strip() == section:
            start = i
    if start is None:
        return None, None
    return start, len(lines)


def set_section(lines, section, values):
    """Return lines with the managed keys of section set to values, or the section removed if values is None."""
    start, end = find_section(lines, section)
    if values is None:
        if start is None:
            return list(lines)
        return lines[:start] + lines[end:]

    rendered = ['%s = %s' % (key, value) for key, value in values.items()]
    if start is None:
        prefix = list(lines)
        if prefix and prefix[-1].strip():
            prefix.append('')
        return prefix + ['[%s]' % section] + rendered

    pending = dict(values)
    body = []
    for line in lines[start + 1:end]:
        match = KEY_RE.match(line)
        if match and match.group(1) in values:
            key = match.group(1)
            # later duplicates of a managed key are dropped
            if key in pending:
                body.append('%s = %s' % (key, pending.pop(key)))
            continue
        body.append(line)
    insert_at = len(body)
    while insert_at and not body[insert_at - 1].strip():
        insert_at -= 1
    body[insert_at:insert_at] = ['%s = %s' % (key, value) for key, value in pending.items()]
    return lines[:start + 1] + body + lines[end:]


def write_config(module, path, text):
    directory = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(directory):
        os.makedirs(directory, 0o700)
    existed = os.path.exists(path)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix='.config.')
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(text)
    except Exception:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
    # atomic_move keeps owner, group, mode and SELinux context of an existing config
    module.atomic_move(tmp, path)
    if not existed:
        module.set_mode_if_different(path, 0o600, False)


def run(module, data, check_mode=False):
    path = data['config_path']
    before = ''
    if os.path.exists(path):
        with open(path) as f:
            before = f.read()

    section = section_name(data['name'])
    result = {'section': section, 'config_path': path}
    if data['state'] == 'present':
        check_identifiers(data)
        values = {'credential_process': credential_process(data)}
        if data['region']:
            values['region'] = data['region']
        result['credential_process'] = values['credential_process']
    else:
        values = None

    lines = set_section(before.splitlines(), section, values)
    after = '\n'.join(lines) + '\n' if lines else ''
    result['changed'] = after != before
    result['diff'] = {'before': before, 'after': after, 'before_header': path, 'after_header': path}
    if result['changed'] and not check_mode:
        write_config(module, path, after)
    return result


def main():
    module = AnsibleModule(argument_spec=ARGUMENT_SPEC, required_if=REQUIRED_IF, supports_check_mode=True)
    try:
        result = run(module, module.params, check_mode=module.check_mode)
    except (ProfileConfigError, OSError) as e:
        module.fail_json(msg=str(e))
    if not module._diff:
        del result['diff']
    module.exit_json(**result)


if __name__ == "__main__":
    main()
