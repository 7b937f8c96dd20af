"""Unit tests for JsonSchemaProvider and naming conventions."""

import json
import os
import tempfile
import unittest

from schema_sync.domain.entities.rules import NamingConvention, apply_style, pluralize, truncate_identifier
from schema_sync.domain.entities.schema import ConstraintKind
from schema_sync.domain.exceptions import ModelError
from schema_sync.infrastructure.repositories.model_repository import JsonSchemaProvider
from tests.fixtures.test_data import TestDataFactory


class TestNamingConvention(unittest.TestCase):
    """Test naming helpers."""

    def test_pluralize(self):
        self.assertEqual(pluralize("user"), "users")
        self.assertEqual(pluralize("category"), "categories")
        self.assertEqual(pluralize("box"), "boxes")
        self.assertEqual(pluralize("day"), "days")

    def test_styles(self):
        self.assertEqual(apply_style("BlogPost", "snake_case"), "blog_post")
        self.assertEqual(apply_style("HTTPRequest", "snake_case"), "http_request")
        self.assertEqual(apply_style("blog_post", "camel_case"), "blogPost")
        self.assertEqual(apply_style("Blog Post", "preserve"), "Blog Post")

    def test_generated_names(self):
        naming = NamingConvention()
        self.assertEqual(naming.table_name("OrderItem"), "order_items")
        self.assertEqual(naming.index_name("posts", ["user_id", "title"]), "idx_posts_user_id_title")
        self.assertEqual(naming.constraint_name(ConstraintKind.FOREIGN_KEY, "posts", ["user_id"]), "fk_posts_user_id")

    def test_truncation_keeps_names_distinct(self):
        first = truncate_identifier("idx_" + "a" * 70, 63)
        second = truncate_identifier("idx_" + "a" * 71, 63)
        self.assertEqual(len(first), 63)
        self.assertNotEqual(first, second)
        self.assertEqual(truncate_identifier("short", 63), "short")
        self.assertEqual(truncate_identifier("x" * 100, None), "x" * 100)


class TestJsonSchemaProvider(unittest.TestCase):
    """Test JsonSchemaProvider functionality."""

    def test_models_document_matches_fixture_table(self):
        snapshot = JsonSchemaProvider(document=TestDataFactory.create_models_document()).get_desired_schema()

        users = snapshot.get("users")
        expected = TestDataFactory.create_users_table()
        self.assertEqual(list(users.columns), ["id", "email", "name"])
        self.assertEqual(
            [c.signature() for c in users.constraints],
            [c.signature() for c in expected.constraints],
        )
        self.assertEqual([c.name for c in users.constraints], ["pk_users_id", "uq_users_email"])
        self.assertFalse(users.column("email").nullable)
        self.assertTrue(users.column("name").nullable)

    def test_blog_document(self):
        snapshot = JsonSchemaProvider(document=TestDataFactory.create_blog_document()).get_desired_schema()

        self.assertEqual(snapshot.table_names(), ["blog_posts", "users"])
        self.assertIn("display_name", snapshot.get("users").columns)

        posts = snapshot.get("blog_posts")
        self.assertEqual(
            [c.name for c in posts.constraints],
            ["pk_blog_posts_id", "fk_blog_posts_author", "ck_blog_posts_rating"],
        )
        fk = posts.foreign_keys()[0]
        self.assertEqual((fk.referenced_table, fk.referenced_columns, fk.on_delete), ("users", ("id",), "CASCADE"))
        self.assertEqual(
            sorted(i.name for i in posts.indexes),
            ["idx_blog_posts_author_title", "idx_blog_posts_title"],
        )

    def test_reads_models_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "models.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(TestDataFactory.create_models_document(with_bio=True), f)
            snapshot = JsonSchemaProvider(path=path).get_desired_schema()
        self.assertIn("bio", snapshot.get("users").columns)

    def test_reference_to_explicit_column(self):
        document = {"models": [
            {"name": "Account", "fields": [{"name": "code", "type": "text(12)", "unique": True}]},
            {"name": "Invoice", "fields": [
                {"name": "id", "type": "integer", "primary_key": True},
                {"name": "accountCode", "type": "text(12)", "references": "Account.code"},
            ]},
        ]}
        snapshot = JsonSchemaProvider(document=document).get_desired_schema()
        fk = snapshot.get("invoices").foreign_keys()[0]
        self.assertEqual((fk.columns, fk.referenced_table, fk.referenced_columns),
                         (("account_code",), "accounts", ("code",)))

    def test_reference_without_primary_key_fails(self):
        document = {"models": [
            {"name": "Tag", "fields": [{"name": "label", "type": "text"}]},
            {"name": "Note", "fields": [{"name": "tag", "type": "text", "references": "Tag"}]},
        ]}
        with self.assertRaises(ModelError):
            JsonSchemaProvider(document=document).get_desired_schema()

    def test_unknown_type_names_the_field(self):
        document = {"models": [{"name": "User", "fields": [{"name": "mood", "type": "feelings"}]}]}
        with self.assertRaises(ModelError) as ctx:
            JsonSchemaProvider(document=document).get_desired_schema()
        self.assertEqual((ctx.exception.table, ctx.exception.column), ("users", "mood"))

    def test_custom_type_and_default_nullable(self):
        document = {"models": [{"name": "Doc", "fields": [
            {"name": "body", "type": "custom", "override": "tsvector"},
            {"name": "title", "type": "text"},
        ]}]}
        snapshot = JsonSchemaProvider(document=document, default_nullable=True).get_desired_schema()
        docs = snapshot.get("docs")
        self.assertEqual(docs.column("body").field_type.key(), "tsvector")
        self.assertTrue(docs.column("title").nullable)

    def test_foreign_key_columns_indexed_on_request(self):
        document = TestDataFactory.create_blog_document()
        document["models"][1]["fields"].append({"name": "editor", "type": "bigint", "references": "User",
                                                "nullable": True})

        plain = JsonSchemaProvider(document=document).get_desired_schema().get("blog_posts")
        indexed = JsonSchemaProvider(document=document, index_foreign_keys=True).get_desired_schema().get("blog_posts")

        self.assertNotIn("idx_blog_posts_editor", [i.name for i in plain.indexes])
        # author already leads idx_blog_posts_author_title
        self.assertEqual(
            [i.name for i in indexed.indexes],
            ["idx_blog_posts_title", "idx_blog_posts_author_title", "idx_blog_posts_editor"],
        )
        self.assertEqual(indexed.indexes[-1].columns, ("editor",))
        self.assertFalse(indexed.indexes[-1].unique)

    def test_timestamp_columns_added_on_request(self):
        document = TestDataFactory.create_models_document()
        document["models"][0]["fields"].append({"name": "created_at", "type": "date"})

        users = JsonSchemaProvider(
            document=document, add_created_at_column=True, add_updated_at_column=True
        ).get_desired_schema().get("users")

        self.assertEqual(list(users.columns), ["id", "email", "name", "created_at", "updated_at"])
        # a declared column wins over the generated one
        self.assertEqual(users.column("created_at").field_type.key(), "date")
        updated = users.column("updated_at")
        self.assertEqual(updated.field_type.key(), "timestamptz")
        self.assertFalse(updated.nullable)
        self.assertEqual(updated.default, "CURRENT_TIMESTAMP")
        self.assertEqual(updated.position, 4)

    def test_timestamp_columns_follow_column_style(self):
        naming = NamingConvention(column_style="camel_case")
        users = JsonSchemaProvider(
            document=TestDataFactory.create_models_document(), naming=naming, add_created_at_column=True
        ).get_desired_schema().get("users")
        self.assertIn("createdAt", users.columns)
        self.assertNotIn("updatedAt", users.columns)

    def test_document_without_models(self):
        with self.assertRaises(ModelError):
            JsonSchemaProvider(document={"tables": []}).get_desired_schema()
        with self.assertRaises(ModelError):
            JsonSchemaProvider()


if __name__ == '__main__':
    unittest.main()
