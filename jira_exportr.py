#!/usr/bin/env python3

import argparse
import collections
import enum
import json
import logging
import os
import sys
import types
import yaml

import xml.etree.ElementTree as ET
from xml.parsers import expat

log = logging.getLogger('jira-exportr')

__doc__ = """
Export Jira entities.xml backups as JSON importer documents
"""

TIMEZONE_OFFSET = '-0600'
ATTACHMENT_URL = 'http://cdn.cognitect.com/jira/attachments/'
PLACEHOLDER_USER = 'import'
EXCLUDE_USERS = frozenset()
ACTIVE_YEARS = (2015, 2019)
EDITOR_YEARS = (2010, 2019)
IGNORE_LABELS = frozenset({'enhancement', 'bug', 'test', 'patch'})
IGNORE_HISTORY_FIELDS = frozenset({'Waiting On', 'Workflow'})
CUSTOM_FIELD_TYPE = None

SELECT_FIELD_TYPE = 'com.atlassian.jira.plugin.system.customfieldtypes:select'

CUSTOM_FIELDS = {
    '10000': {
        'fieldName': 'Patch',
        'fieldType': SELECT_FIELD_TYPE,
        'values': {'10001': 'Code', '10002': 'Code and Test'},
    },
    '10002': {
        'fieldName': 'Approval',
        'fieldType': SELECT_FIELD_TYPE,
        'values': {
            '10120': 'Triaged', '10220': 'Prescreened',
            '10003': 'Vetted', '10004': 'Screened',
            '10005': 'Accepted', '10006': 'Incomplete',
            '10007': 'Ok',
        },
    },
}

PRIORITY_CODES = types.MappingProxyType({
    '1': 'Blocker',
    '2': 'Critical',
    '3': 'Major',
    '4': 'Minor',
    '5': 'Trivial',
})

STATUS_CODES = types.MappingProxyType({
    '1': 'Open',
    '3': 'In Progress',
    '4': 'Reopened',
    '5': 'Resolved',
    '6': 'Closed',
})

ISSUE_TYPE_CODES = types.MappingProxyType({
    '1': 'Bug',
    '3': 'Task',
    '4': 'Improvement',
    '5': 'New Feature',
})

RESOLUTION_CODES = types.MappingProxyType({
    '1': 'Completed',
    '2': 'Declined',
    '3': 'Duplicate',
    '4': 'Not Reproducible',
})

class ExportError(Exception):
    pass

class EntityParseError(ExportError):
    def __init__(self, message, position=None):
        self.position = position

        if position:
            message = f"{message} (line {position[0]}, column {position[1]})"

        super().__init__(message)

class Entity(dict):
    """
        One flat entity record: attribute name -> string value, tagged with its entity type.
    """

    __slots__ = ('tag',)

    def __init__(self, tag, attrs=()):
        super().__init__(attrs)
        self.tag = tag

    def __repr__(self):
        return f'{self.tag}({dict.__repr__(self)})'

def local_name(name):
    if name.startswith('{'):
        return name.partition('}')[2]
    else:
        return name

class State(enum.Enum):
    OUTSIDE = 'outside'
    IN_ENTITY = 'in-entity'
    IN_SUB = 'in-sub'

class EntityParser:
    """
        Builds {tag: [Entity]} from iterparse start/end events below the root container.

        Entity fields come from the element attributes, or from text-only sub-elements.
    """

    def __init__(self, count_interval=10000):
        self.count_interval = count_interval
        self.entities = collections.defaultdict(list)
        self.state = State.OUTSIDE
        self.root = None
        self.entity = None
        self.sub = None
        self.count = 0

    def start_entity(self, e):
        self.entity = Entity(local_name(e.tag), ((local_name(k), v) for k, v in e.attrib.items()))

        return State.IN_ENTITY

    def start_sub(self, e):
        self.sub = local_name(e.tag)

        return State.IN_SUB

    def start_nested(self, e):
        raise EntityParseError(f"Unexpected <{local_name(e.tag)}> nested within <{self.entity.tag}><{self.sub}> of entity #{self.count + 1}")

    def end_sub(self, e):
        if e.text is not None:
            self.entity[self.sub] = e.text

        self.sub = None

        return State.IN_ENTITY

    def end_entity(self, e):
        entity = self.entity

        log.debug("ENTITY %s %s", entity.tag, entity.get('id'))

        self.entities[entity.tag].append(entity)
        self.entity = None
        self.count += 1

        if self.count % self.count_interval == 0:
            log.info("Processing %d elements...", self.count)

        # parsed entities are kept as records, not elements
        e.clear()
        self.root.clear()

        return State.OUTSIDE

    def end_container(self, e):
        return State.OUTSIDE

    TRANSITIONS = {
        (State.OUTSIDE, 'start'):   start_entity,
        (State.IN_ENTITY, 'start'): start_sub,
        (State.IN_SUB, 'start'):    start_nested,
        (State.IN_SUB, 'end'):      end_sub,
        (State.IN_ENTITY, 'end'):   end_entity,
        (State.OUTSIDE, 'end'):     end_container,
    }

    def feed(self, event, e):
        self.state = self.TRANSITIONS[self.state, event](self, e)

    def parse(self, file):
        """
            Parse a path or binary file, returning {tag: [Entity]} in source order.
        """

        try:
            events = ET.iterparse(file, events=['start', 'end'])

            # skip to container
            event, self.root = next(events)

            log.debug("ROOT %s", self.root.tag)

            for event, e in events:
                self.feed(event, e)

        except ET.ParseError as error:
            raise EntityParseError(f"Invalid XML: {expat.ErrorString(error.code)}", position=error.position) from error

        except OSError as error:
            raise ExportError(f"Cannot read entities: {error}") from error

        log.info("Parsed %d elements", self.count)

        return dict(self.entities)

def parse_entities(file, count_interval=10000):
    return EntityParser(count_interval=count_interval).parse(file)

def entity_type(tag, *attrs):
    """
        Typed, immutable view of one entity tag, with fields named after its XML attributes.

        Missing attributes are None.
    """

    cls = collections.namedtuple(tag, attrs, defaults=(None,) * len(attrs))
    cls.tag = tag

    return cls

Project = entity_type('Project', 'id', 'name', 'key', 'description', 'lead')
Version = entity_type('Version', 'id', 'project', 'name', 'released', 'releasedate', 'sequence')
Component = entity_type('Component', 'id', 'project', 'name')
Issue = entity_type('Issue', 'id', 'project', 'key', 'priority', 'status', 'type', 'resolution',
    'reporter', 'assignee', 'created', 'updated', 'summary', 'description',
)
NodeAssociation = entity_type('NodeAssociation', 'sourceNodeId', 'sinkNodeId', 'associationType')
UserAssociation = entity_type('UserAssociation', 'sourceName', 'sinkNodeId', 'associationType')
Label = entity_type('Label', 'id', 'issue', 'label')
CustomFieldValue = entity_type('CustomFieldValue', 'id', 'issue', 'customfield', 'stringvalue', 'type')
Action = entity_type('Action', 'id', 'issue', 'type', 'author', 'updateauthor', 'body', 'created', 'updated')
FileAttachment = entity_type('FileAttachment', 'id', 'issue', 'filename', 'author', 'created')
ChangeGroup = entity_type('ChangeGroup', 'id', 'issue', 'author', 'created')
ChangeItem = entity_type('ChangeItem', 'id', 'group', 'fieldtype', 'field',
    'oldvalue', 'oldstring', 'newvalue', 'newstring',
)
User = entity_type('User', 'id', 'userName', 'emailAddress', 'displayName', 'active')

class EntityStore:
    """
        Read-only collections of parsed entities, with typed views and keyed lookups.
    """

    def __init__(self, entities):
        self.entities = {tag: tuple(records) for tag, records in entities.items()}
        self._views = {}
        self._indexes = {}
        self._groups = {}

    def tags(self):
        return sorted(self.entities)

    def records(self, tag):
        return self.entities.get(tag, ())

    def count(self, tag):
        return len(self.records(tag))

    def all(self, cls):
        if cls.tag not in self._views:
            self._views[cls.tag] = tuple(
                cls(**{attr: record.get(attr) for attr in cls._fields}) for record in self.records(cls.tag)
            )

        return self._views[cls.tag]

    def where(self, cls, **equals):
        return [item for item in self.all(cls) if all(getattr(item, attr) == value for attr, value in equals.items())]

    def index(self, cls, attr='id'):
        """
            Map attr -> first record with that value.
        """

        key = (cls.tag, attr)

        if key not in self._indexes:
            index = {}

            for item in self.all(cls):
                index.setdefault(getattr(item, attr), item)

            self._indexes[key] = index

        return self._indexes[key]

    def group(self, cls, attr):
        """
            Map attr -> [records] in source order.
        """

        key = (cls.tag, attr)

        if key not in self._groups:
            groups = collections.defaultdict(list)

            for item in self.all(cls):
                groups[getattr(item, attr)].append(item)

            self._groups[key] = dict(groups)

        return self._groups[key]

    def lookup(self, cls, attr, value):
        return self.group(cls, attr).get(value, [])

def translate(codes, code, name='code'):
    label = codes.get(code)

    if label is None and code is not None:
        log.debug("UNKNOWN %s %s", name, code)

    return label

def transform_date(date, offset=TIMEZONE_OFFSET):
    """
        2015-03-01 10:15:00.0 => 2015-03-01T10:15:00.0-0600

        The offset is appended as-is, without any timezone conversion.
    """

    if not date:
        return None

    return f'{date[0:10]}T{date[11:]}{offset}'

def resolve_user(name, active, placeholder=PLACEHOLDER_USER, exclude=EXCLUDE_USERS):
    if name in active and name not in exclude:
        return name
    else:
        return placeholder

def in_years(date, years):
    if not date:
        return False

    first, last = years

    try:
        year = int(date[0:4])
    except ValueError:
        return False

    return first <= year <= last

def compute_active_users(store, active_years=ACTIVE_YEARS, editor_years=EDITOR_YEARS, exclude=EXCLUDE_USERS):
    """
        Recent reporters and commenters, plus anyone who has edited an issue within editor_years.
    """

    creators = {issue.reporter for issue in store.all(Issue) if in_years(issue.created, active_years)}
    commenters = {action.updateauthor or action.author for action in store.all(Action) if in_years(action.updated, active_years)}
    editors = {group.author for group in store.all(ChangeGroup) if in_years(group.created, editor_years)}

    log.info("SCAN creators=%d commenters=%d editors=%d", len(creators), len(commenters), len(editors))

    active = (creators | commenters | editors) - set(exclude)
    active.discard(None)

    return frozenset(active)

def sparse(*items):
    """
        Build an output record, omitting None values and empty lists.
    """

    return {key: value for key, value in items if not (value is None or value == [])}

def distinct(values):
    return list(dict.fromkeys(values))

class JiraExporter:
    def __init__(self, timezone_offset=TIMEZONE_OFFSET, attachment_url=ATTACHMENT_URL, placeholder_user=PLACEHOLDER_USER,
            exclude_users=None, active_years=ACTIVE_YEARS, editor_years=EDITOR_YEARS,
            ignore_labels=None, ignore_history_fields=None, custom_fields=None, custom_field_type=CUSTOM_FIELD_TYPE,
            projects=None):
        self.store = None
        self.active_users = None

        self.timezone_offset = timezone_offset
        self.attachment_url = attachment_url
        self.placeholder_user = placeholder_user
        self.exclude_users = EXCLUDE_USERS
        self.active_years = tuple(active_years)
        self.editor_years = tuple(editor_years)
        self.ignore_labels = IGNORE_LABELS
        self.ignore_history_fields = IGNORE_HISTORY_FIELDS
        self.custom_fields = CUSTOM_FIELDS
        self.custom_field_type = custom_field_type
        self.projects = None

        if exclude_users is not None:
            self.exclude_users = frozenset(exclude_users)
        if ignore_labels is not None:
            self.ignore_labels = frozenset(ignore_labels)
        if ignore_history_fields is not None:
            self.ignore_history_fields = frozenset(ignore_history_fields)
        if custom_fields is not None:
            self.custom_fields = {
                str(id): dict(field, values={str(k): v for k, v in field['values'].items()})
                    for id, field in custom_fields.items()
            }
        if projects:
            self.projects = set(projects)

    def load(self, file, count_interval=10000):
        self.store = EntityStore(parse_entities(file, count_interval=count_interval))

        for tag in self.store.tags():
            log.debug("LOAD %-30s: %8d", tag, self.store.count(tag))

    def scan(self):
        self.active_users = compute_active_users(self.store,
            active_years = self.active_years,
            editor_years = self.editor_years,
            exclude = self.exclude_users,
        )

        log.info("SCAN active users: %d", len(self.active_users))

    def find_user(self, name):
        return resolve_user(name, self.active_users, placeholder=self.placeholder_user, exclude=self.exclude_users)

    def transform_date(self, date):
        return transform_date(date, offset=self.timezone_offset)

    def transform_versions(self, project_id):
        return [
            sparse(
                ('name', version.name),
                ('released', 'true' if version.released == 'true' else None),
                ('releasedate', self.transform_date(version.releasedate)),
            ) for version in self.store.lookup(Version, 'project', project_id)
        ]

    def transform_components(self, project_id):
        return [component.name for component in self.store.lookup(Component, 'project', project_id)]

    def linked_names(self, issue_id, association_type, cls):
        """
            Names of the cls records linked from the issue by NodeAssociation of the given type.
        """

        targets = self.store.index(cls)
        names = []

        for association in self.store.lookup(NodeAssociation, 'sourceNodeId', issue_id):
            if association.associationType != association_type:
                continue

            target = targets.get(association.sinkNodeId)

            if target is None:
                log.debug("MISSING %s id=%s for %s issue=%s", cls.tag, association.sinkNodeId, association_type, issue_id)
                continue

            names.append(target.name)

        return names

    def find_labels(self, issue_id):
        return [label.label for label in self.store.lookup(Label, 'issue', issue_id)
            if label.label is not None and label.label not in self.ignore_labels
        ]

    def custom_field_values(self, issue_id):
        values = []

        for value in self.store.lookup(CustomFieldValue, 'issue', issue_id):
            if self.custom_field_type is not None and value.type != self.custom_field_type:
                continue

            field = self.custom_fields.get(value.customfield)

            if field is None:
                log.debug("UNKNOWN customfield %s issue=%s", value.customfield, issue_id)
                continue

            option = field['values'].get(value.stringvalue)

            if option is None:
                log.debug("UNKNOWN customfield %s value %s issue=%s", value.customfield, value.stringvalue, issue_id)
                continue

            values.append({
                'fieldName': field['fieldName'],
                'fieldType': field['fieldType'],
                'value': option,
            })

        return values

    def comments(self, issue_id):
        return [
            sparse(
                ('body', action.body),
                ('author', self.find_user(action.author)),
                ('created', self.transform_date(action.created)),
            ) for action in self.store.lookup(Action, 'issue', issue_id)
        ]

    def attachments(self, project_key, issue_key, issue_id):
        return [
            sparse(
                ('name', attachment.filename),
                ('attacher', self.find_user(attachment.author)),
                ('created', self.transform_date(attachment.created)),
                ('uri', f'{self.attachment_url}{project_key}/{issue_key}/{attachment.id}'),
            ) for attachment in self.store.lookup(FileAttachment, 'issue', issue_id)
        ]

    def associated_users(self, issue_id, association_type):
        return distinct(
            self.find_user(association.sourceName) for association in self.store.lookup(UserAssociation, 'sinkNodeId', issue_id)
                if association.associationType == association_type
        )

    def history_items(self, group_id):
        # old/new raw values are ids, only the display strings are exported
        return [
            sparse(
                ('fieldType', item.fieldtype),
                ('field', item.field),
                ('fromString', item.oldstring),
                ('toString', item.newstring),
            ) for item in self.store.lookup(ChangeItem, 'group', group_id)
                if item.field not in self.ignore_history_fields
        ]

    def history(self, issue_id):
        return [
            sparse(
                ('author', self.find_user(group.author)),
                ('created', self.transform_date(group.created)),
                ('items', self.history_items(group.id)),
            ) for group in self.store.lookup(ChangeGroup, 'issue', issue_id)
        ]

    def transform_issue(self, issue, project_key):
        id = issue.id

        return sparse(
            ('key', issue.key),
            ('priority', translate(PRIORITY_CODES, issue.priority, 'priority')),
            ('status', translate(STATUS_CODES, issue.status, 'status')),
            ('reporter', self.find_user(issue.reporter)),
            ('issueType', translate(ISSUE_TYPE_CODES, issue.type, 'issuetype')),
            ('created', self.transform_date(issue.created)),
            ('updated', self.transform_date(issue.updated)),
            ('summary', issue.summary),
            ('description', issue.description),
            ('labels', self.find_labels(id)),
            ('resolution', translate(RESOLUTION_CODES, issue.resolution, 'resolution')),
            ('assignee', self.find_user(issue.assignee) if issue.assignee is not None else None),
            ('affectedVersions', self.linked_names(id, 'IssueVersion', Version)),
            ('fixedVersions', self.linked_names(id, 'IssueFixVersion', Version)),
            ('components', self.linked_names(id, 'IssueComponent', Component)),
            ('customFieldValues', self.custom_field_values(id)),
            ('comments', self.comments(id)),
            ('attachments', self.attachments(project_key, issue.key, id)),
            ('watchers', self.associated_users(id, 'WatchIssue')),
            ('voters', self.associated_users(id, 'VoteIssue')),
            ('history', self.history(id)),
        )

    def transform_issues(self, project_id, project_key):
        return [self.transform_issue(issue, project_key) for issue in self.store.lookup(Issue, 'project', project_id)]

    def transform_project(self, project):
        issues = self.transform_issues(project.id, project.key)

        log.info("EXPORT %s: %d issues", project.key, len(issues))

        return sparse(
            ('name', project.name),
            ('key', project.key),
            ('type', 'software'),
            ('description', project.description),
            ('versions', self.transform_versions(project.id)),
            ('components', self.transform_components(project.id)),
            ('issues', issues),
        )

    def export_projects(self):
        """
            Returns [(filename, {'projects': [project]})] for each exported project.
        """

        documents = []

        for project in self.store.all(Project):
            if self.projects is not None and project.key not in self.projects:
                log.debug("SKIP project %s", project.key)
                continue

            documents.append((f'project-{project.key}.json', {'projects': [self.transform_project(project)]}))

        if self.projects is not None:
            missing = self.projects - {project.key for project in self.store.all(Project)}

            if missing:
                log.warning("Unknown projects: %s", ', '.join(sorted(missing)))

        return documents

    def export_users(self):
        users = [
            {
                'name': self.placeholder_user,
                'groups': ['jira-users'],
                'active': True,
                'fullname': 'jira import',
            },
        ]

        for user in self.store.all(User):
            if user.userName == self.placeholder_user or self.find_user(user.userName) != user.userName:
                continue

            users.append(sparse(
                ('name', user.userName),
                ('groups', ['jira-users', 'jira-developers']),
                ('active', True),
                ('email', user.emailAddress),
                ('fullname', user.displayName),
            ))

        log.info("EXPORT users: %d", len(users))

        return [('users.json', {'users': users})]

def write_documents(documents, output_dir='.'):
    os.makedirs(output_dir, exist_ok=True)

    for name, document in documents:
        path = os.path.join(output_dir, name)

        log.info("WRITE %s", path)

        with open(path, 'w', encoding='utf-8') as file:
            json.dump(document, file, indent=2, ensure_ascii=False)
            file.write('\n')

def main(argv=None):
    parser = argparse.ArgumentParser(
        formatter_class = argparse.ArgumentDefaultsHelpFormatter,
        description     = __doc__,
    )

    parser.set_defaults(log_level=logging.WARN)

    parser.add_argument('-q', '--quiet', action='store_const', dest='log_level', const=logging.ERROR, help="Do not log warnings")
    parser.add_argument('-v', '--verbose', action='store_const', dest='log_level', const=logging.INFO, help="Log info messages")
    parser.add_argument('--debug', action='store_const', dest='log_level', const=logging.DEBUG, help="Log debug messages")

    parser.add_argument('--config', metavar='PATH', help="YAML config")

    parser.add_argument('--input-entities', metavar='PATH', required=True, help="Jira backup entities.xml")
    parser.add_argument('--output-dir', metavar='PATH', default='.', help="Directory for the JSON documents")
    parser.add_argument('--project', metavar='KEY', action='append', dest='projects', help="Only export the given projects")
    parser.add_argument('--no-users', action='store_false', dest='users', help="Do not export users.json")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level       = args.log_level,
        stream      = sys.stderr,
        format      = "%(asctime)s %(levelname)5s %(module)s: %(message)s",
    )

    config = {}

    if args.config:
        with open(args.config) as file:
            config = yaml.safe_load(file) or {}

    export_config = dict(config.get('export') or {})

    if args.projects:
        export_config['projects'] = args.projects

    app = JiraExporter(**export_config)

    try:
        app.load(args.input_entities)
        app.scan()

        documents = app.export_projects()

        if args.users:
            documents += app.export_users()

    except ExportError as error:
        log.error("%s: %s", args.input_entities, error)
        sys.exit(1)

    write_documents(documents, args.output_dir)

if __name__ == '__main__':
    main()
