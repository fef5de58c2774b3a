import io
import unittest

from jira_exportr import EntityStore, Issue, NodeAssociation, Version, parse_entities


XML = b"""<entity-engine-xml>
    <Version id="200" project="10010" name="1.0"/>
    <Version id="201" project="10010" name="1.1"/>
    <Version id="200" project="10020" name="duplicate id"/>
    <Version id="300" project="10020" name="2.0"/>
    <Issue id="100" project="10010" key="CLJ-1"/>
    <NodeAssociation sourceNodeId="100" sinkNodeId="200" associationType="IssueFixVersion"/>
</entity-engine-xml>
"""


class TestEntityStore(unittest.TestCase):
    def setUp(self):
        self.store = EntityStore(parse_entities(io.BytesIO(XML)))

    def test_tags_and_counts(self):
        self.assertEqual(self.store.tags(), ['Issue', 'NodeAssociation', 'Version'])
        self.assertEqual(self.store.count('Version'), 4)
        self.assertEqual(self.store.count('Label'), 0)
        self.assertEqual(self.store.records('Label'), ())

    def test_records_are_immutable_sequences(self):
        self.assertIsInstance(self.store.records('Version'), tuple)

    def test_typed_view(self):
        issue = self.store.all(Issue)[0]
        self.assertEqual(issue.id, '100')
        self.assertEqual(issue.key, 'CLJ-1')
        self.assertIsNone(issue.priority)
        self.assertEqual(Issue.tag, 'Issue')

    def test_typed_view_is_converted_once(self):
        self.assertIs(self.store.all(Version), self.store.all(Version))

    def test_index_keeps_first_record(self):
        index = self.store.index(Version)
        self.assertEqual(index['200'].name, '1.0')
        self.assertEqual(index['300'].name, '2.0')
        self.assertNotIn('999', index)

    def test_index_is_idempotent(self):
        self.assertEqual(self.store.index(Version), self.store.index(Version))

    def test_where_filters_in_source_order(self):
        names = [version.name for version in self.store.where(Version, project='10020')]
        self.assertEqual(names, ['duplicate id', '2.0'])
        self.assertEqual(self.store.where(Version, project='10010', name='1.1')[0].id, '201')
        self.assertEqual(self.store.where(Version, project='nope'), [])

    def test_group_and_lookup(self):
        groups = self.store.group(Version, 'project')
        self.assertEqual([version.id for version in groups['10010']], ['200', '201'])
        self.assertEqual(self.store.lookup(NodeAssociation, 'sourceNodeId', '100')[0].sinkNodeId, '200')
        self.assertEqual(self.store.lookup(NodeAssociation, 'sourceNodeId', 'missing'), [])


if __name__ == '__main__':
    unittest.main()
