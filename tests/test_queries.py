"""
Tests for query assembly, slugs and store form parsing
"""
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo import DESCENDING
from werkzeug.datastructures import MultiDict

from conftest import make_cursor
from stores import (
    NEAR_MAX_DISTANCE,
    ParseError,
    StoreForm,
    StoreQuery,
    geo_search_query,
    listing_query,
    paginate,
    slugify,
    tag_query,
    tags_list_pipeline,
    text_search_query,
    top_stores_pipeline,
    unique_slug,
)


def test_listing_sorts_newest_first_and_pages():
    query = listing_query(paginate(3, 4, 20))

    assert query.filter == {}
    assert query.sort == [('created', DESCENDING)]
    assert query.skip == 8
    assert query.limit == 4


def test_tag_query_with_tag():
    assert tag_query('Wifi').filter == {'tags': 'Wifi'}


@pytest.mark.parametrize('tag', [None, ''])
def test_tag_query_without_tag_matches_any_tagged_store(tag):
    assert tag_query(tag).filter == {'tags': {'$exists': True}}


def test_tags_list_counts_and_sorts():
    pipeline = tags_list_pipeline()

    assert pipeline[0] == {'$unwind': '$tags'}
    assert pipeline[1] == {'$group': {'_id': '$tags', 'count': {'$sum': 1}}}
    assert pipeline[2]['$sort']['count'] == -1


def test_text_search_ranks_by_score_and_caps_results():
    query = text_search_query('coffee')

    assert query.filter == {'$text': {'$search': 'coffee'}}
    assert query.projection == {'score': {'$meta': 'textScore'}}
    assert query.sort == [('score', {'$meta': 'textScore'})]
    assert query.limit == 5


def test_text_search_passes_empty_query_through():
    assert text_search_query('').filter == {'$text': {'$search': ''}}
    assert text_search_query(None).filter == {'$text': {'$search': ''}}


def test_geo_search_builds_near_query():
    query = geo_search_query('-79.38', '43.65')

    near = query.filter['location']['$near']
    assert near['$geometry'] == {'type': 'Point', 'coordinates': [-79.38, 43.65]}
    assert near['$maxDistance'] == NEAR_MAX_DISTANCE == 10000
    assert set(query.projection) == {'slug', 'name', 'description', 'location', 'photo'}
    assert query.limit == 10


@pytest.mark.parametrize('lng,lat', [('abc', '43.6'), ('-79.3', 'north'), (None, '43.6'), ('nan', '1'), ('1', 'inf'),
    ('500', '0'), ('-180.5', '0'), ('0', '100'), ('0', '-90.01'),
])
def test_geo_search_rejects_bad_coordinates(lng, lat):
    with pytest.raises(ParseError):
        geo_search_query(lng, lat)


def test_geo_search_accepts_boundary_coordinates():
    near = geo_search_query('-180', '90').filter['location']['$near']

    assert near['$geometry']['coordinates'] == [-180.0, 90.0]


def test_top_stores_needs_two_reviews():
    pipeline = top_stores_pipeline()

    assert pipeline[0]['$lookup']['from'] == 'reviews'
    assert {'$match': {'reviews.1': {'$exists': True}}} in pipeline
    assert pipeline[-2] == {'$sort': {'average_rating': -1}}
    assert pipeline[-1] == {'$limit': 10}


class TestStoreQueryRun:

    def test_applies_sort_skip_limit(self):
        collection = MagicMock()
        cursor = make_cursor([{'name': 'a'}])
        collection.find.return_value = cursor

        docs = StoreQuery(filter={'x': 1}, sort=[('created', -1)], skip=4, limit=4).run(collection)

        assert docs == [{'name': 'a'}]
        collection.find.assert_called_once_with({'x': 1}, None)
        cursor.sort.assert_called_once_with([('created', -1)])
        cursor.skip.assert_called_once_with(4)
        cursor.limit.assert_called_once_with(4)

    def test_skips_unused_modifiers(self):
        collection = MagicMock()
        cursor = make_cursor([])
        collection.find.return_value = cursor

        assert StoreQuery(filter={'tags': 'Wifi'}).run(collection) == []
        cursor.sort.assert_not_called()
        cursor.skip.assert_not_called()
        cursor.limit.assert_not_called()


class TestSlugs:

    @pytest.mark.parametrize('name,slug', [
        ('Coffee Corner', 'coffee-corner'),
        ('  Café  Über!! ', 'cafe-uber'),
        ("Joe's Bar & Grill", 'joe-s-bar-grill'),
        ('!!!', 'store'),
    ])
    def test_slugify(self, name, slug):
        assert slugify(name) == slug

    def slug_collection(self, *slugs):
        collection = MagicMock()
        collection.find.return_value = [{'_id': ObjectId(), 'slug': slug} for slug in slugs]
        return collection

    def test_unique_slug_when_free(self):
        collection = self.slug_collection()

        assert unique_slug(collection, 'Coffee Corner') == 'coffee-corner'
        query, projection = collection.find.call_args[0]
        assert query == {'slug': {'$regex': '^coffee\\-corner(-[0-9]+)?$'}}
        assert projection == {'slug': 1}

    def test_unique_slug_appends_counter(self):
        collection = self.slug_collection('coffee-corner')

        assert unique_slug(collection, 'Coffee Corner') == 'coffee-corner-2'

    def test_unique_slug_uses_highest_suffix(self):
        collection = self.slug_collection('coffee-corner', 'coffee-corner-3')

        assert unique_slug(collection, 'Coffee Corner') == 'coffee-corner-4'

    def test_unique_slug_after_first_store_was_renamed(self):
        # coffee-corner was renamed away; only coffee-corner-2 is still taken
        collection = self.slug_collection('coffee-corner-2')

        assert unique_slug(collection, 'Coffee Corner') == 'coffee-corner'

    def test_unique_slug_skips_live_suffix_when_base_taken_again(self):
        collection = self.slug_collection('coffee-corner-2', 'coffee-corner')

        assert unique_slug(collection, 'Coffee Corner') == 'coffee-corner-3'

    def test_unique_slug_with_trailing_number_in_name(self):
        collection = self.slug_collection('store-7', 'store-7-2')

        assert unique_slug(collection, 'Store 7') == 'store-7-3'

    def test_unique_slug_ignores_the_store_being_renamed(self):
        collection = self.slug_collection()
        store_id = ObjectId()

        unique_slug(collection, 'Coffee Corner', exclude_id=store_id)

        assert collection.find.call_args[0][0]['_id'] == {'$ne': store_id}


class TestStoreForm:

    def form(self, **overrides):
        data = MultiDict([
            ('name', ' Coffee Corner '),
            ('description', 'Espresso'),
            ('address', '1 Front St'),
            ('lng', '-79.38'),
            ('lat', '43.65'),
            ('tags', 'Wifi'),
            ('tags', 'Open Late'),
            ('tags', 'Wifi'),
        ])
        for key, value in overrides.items():
            data.setlist(key, [value])
        return StoreForm.from_form(data)

    def test_parses_fields(self):
        form = self.form()

        assert form.name == 'Coffee Corner'
        assert form.tags == ['Open Late', 'Wifi']
        assert form.errors() == []
        assert form.to_document() == {
            'name': 'Coffee Corner',
            'description': 'Espresso',
            'tags': ['Open Late', 'Wifi'],
            'location': {
                'type': 'Point',
                'coordinates': [-79.38, 43.65],
                'address': '1 Front St',
            },
        }

    def test_reports_missing_values(self):
        form = self.form(name='', address='', lng='east')

        assert form.errors() == [
            'Please supply a store name!',
            'You must supply an address!',
            'You must supply coordinates!',
        ]

    def test_round_trips_an_existing_document(self):
        doc = {
            'name': 'Coffee Corner',
            'tags': ['Wifi'],
            'location': {'coordinates': [-79.38, 43.65], 'address': '1 Front St'},
        }

        form = StoreForm.from_document(doc)

        assert form.lng_raw == '-79.38'
        assert form.lat_raw == '43.65'
        assert form.errors() == []

    def test_out_of_range_coordinates_are_rejected(self):
        form = self.form(lat='100')

        assert form.errors() == ['You must supply coordinates!']

    def test_plain_mapping_with_single_tag(self):
        form = StoreForm.from_form({'name': 'Coffee Corner', 'tags': 'Wifi'})

        assert form.tags == ['Wifi']

    def test_plain_mapping_with_tag_list(self):
        form = StoreForm.from_form({'name': 'Coffee Corner', 'tags': ['Wifi', 'Licensed']})

        assert form.tags == ['Licensed', 'Wifi']
