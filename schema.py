from typing import List

import jsonschema

from errors import ValidationError


def validate(data, schema):
    try:
        jsonschema.validate(data, schema)
        return True
    except jsonschema.exceptions.ValidationError:
        return False


def errors(data, schema) -> List[str]:
    validator = jsonschema.Draft7Validator(schema)
    messages = []
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(part) for part in e.path]):
        location = '.'.join(str(part) for part in error.path)
        messages.append('%s: %s' % (location, error.message) if location else error.message)
    return messages


def check(data, schema, message='Invalid request data'):
    """Raise a ValidationError listing every problem with ``data``."""

    problems = errors(data, schema)
    if problems:
        raise ValidationError(message, details=problems)
    return data


MUSICAL_KEY = {
    'type': 'string',
    'enum': ['C', 'C#', 'Db', 'D', 'D#', 'Eb', 'E', 'F', 'F#', 'Gb', 'G', 'G#', 'Ab', 'A', 'A#', 'Bb', 'B'],
}

DIFFICULTY = {'type': 'string', 'enum': ['beginner', 'intermediate', 'advanced']}

TAGS = {'type': 'array', 'items': {'type': 'string', 'maxLength': 50}, 'maxItems': 50}

OBJECT_ID = {'type': 'string', 'pattern': '^[0-9a-fA-F]{24}$'}

register = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'username': {'type': 'string'},
        'password': {'type': 'string'}
    },
    'required': ['username', 'password']
}

login = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'username': {'type': 'string'},
        'password': {'type': 'string'},
        'remember': {'type': 'boolean'}
    },
    'required': ['username', 'password']
}

update_display_name = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'display_name': {'type': 'string'}
    }
}

update_password = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'current_password': {'type': 'string'},
        'new_password': {'type': 'string'}
    },
    'required': ['current_password', 'new_password']
}

delete_account = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'password': {'type': 'string'}
    },
    'required': ['password']
}

_song_properties = {
    'title': {'type': 'string', 'minLength': 1, 'maxLength': 200},
    'artist': {'type': 'string', 'maxLength': 100},
    'chordData': {'type': 'string', 'minLength': 1},
    'key': MUSICAL_KEY,
    'tempo': {'type': 'number', 'minimum': 40, 'maximum': 200},
    'timeSignature': {'type': 'string', 'pattern': '^[0-9]{1,2}/[0-9]{1,2}$'},
    'difficulty': DIFFICULTY,
    'themes': TAGS,
    'source': {'type': 'string', 'maxLength': 100},
    'lyrics': {'type': 'string', 'maxLength': 10000},
    'notes': {'type': 'string', 'maxLength': 2000},
    'isPublic': {'type': 'boolean'}
}

song_create = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': _song_properties,
    'required': ['title', 'chordData']
}

song_update = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': _song_properties
}

rating = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'rating': {'type': 'number'}
    },
    'required': ['rating']
}

_mashup_section = {
    'type': 'object',
    'properties': {
        'songId': OBJECT_ID,
        'title': {'type': 'string', 'maxLength': 200},
        'startBar': {'type': 'integer', 'minimum': 1},
        'endBar': {'type': 'integer', 'minimum': 1}
    },
    'required': ['songId', 'startBar', 'endBar']
}

_arrangement_properties = {
    'name': {'type': 'string', 'minLength': 1, 'maxLength': 200},
    'songIds': {'type': 'array', 'items': OBJECT_ID, 'minItems': 1},
    'chordData': {'type': 'string', 'minLength': 1},
    'key': MUSICAL_KEY,
    'tempo': {'type': 'number', 'minimum': 40, 'maximum': 200},
    'timeSignature': {'type': 'string', 'pattern': '^[0-9]{1,2}/[0-9]{1,2}$'},
    'difficulty': DIFFICULTY,
    'description': {'type': 'string', 'maxLength': 1000},
    'tags': TAGS,
    'isPublic': {'type': 'boolean'},
    'mashupSections': {'type': 'array', 'items': _mashup_section}
}

arrangement_create = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': _arrangement_properties,
    'required': ['name', 'songIds', 'chordData', 'key']
}

arrangement_update = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': _arrangement_properties
}

setlist_item = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'songId': OBJECT_ID,
        'arrangementId': {'anyOf': [OBJECT_ID, {'type': 'null'}]},
        'transpose': {'type': 'integer', 'minimum': -11, 'maximum': 11},
        'notes': {'type': 'string', 'maxLength': 500},
        'order': {'type': 'integer', 'minimum': 0}
    },
    'required': ['songId']
}

_setlist_properties = {
    'name': {'type': 'string', 'minLength': 1, 'maxLength': 200},
    'description': {'type': 'string', 'maxLength': 1000},
    'tags': TAGS,
    'isPublic': {'type': 'boolean'},
    'songs': {'type': 'array', 'items': setlist_item}
}

setlist_create = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': _setlist_properties,
    'required': ['name']
}

setlist_update = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': _setlist_properties
}

setlist_reorder = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'songIds': {'type': 'array', 'items': {'type': 'string'}}
    },
    'required': ['songIds']
}

setlist_transpose = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'transpose': {'type': 'integer', 'minimum': -11, 'maximum': 11}
    },
    'required': ['transpose']
}

review = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'rating': {'type': 'integer', 'minimum': 1, 'maximum': 5},
        'comment': {'type': 'string', 'minLength': 10, 'maxLength': 2000}
    },
    'required': ['rating', 'comment']
}

review_report = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'reason': {'type': 'string', 'minLength': 1, 'maxLength': 500}
    },
    'required': ['reason']
}

verse_submit = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'reference': {'type': 'string', 'minLength': 1, 'maxLength': 100},
        'text': {'type': 'string', 'minLength': 1, 'maxLength': 1000}
    },
    'required': ['reference', 'text']
}

verse_moderate = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'status': {'type': 'string', 'enum': ['pending', 'approved', 'rejected']},
        'rejectionReason': {'type': 'string', 'maxLength': 500}
    },
    'required': ['status']
}

comment_create = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'text': {'type': 'string', 'minLength': 1, 'maxLength': 2000},
        'parentId': {'anyOf': [OBJECT_ID, {'type': 'null'}]}
    },
    'required': ['text']
}

comment_update = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'text': {'type': 'string', 'minLength': 1, 'maxLength': 2000}
    },
    'required': ['text']
}

profile_update = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'display_name': {'type': 'string', 'maxLength': 25},
        'profile': {
            'type': 'object',
            'properties': {
                'bio': {'type': 'string', 'maxLength': 500},
                'website': {'type': 'string', 'maxLength': 200},
                'location': {'type': 'string', 'maxLength': 100}
            },
            'additionalProperties': False
        },
        'preferences': {
            'type': 'object',
            'properties': {
                'defaultKey': MUSICAL_KEY,
                'notation': {'type': 'string', 'enum': ['english', 'german', 'latin']},
                'fontSize': {'type': 'integer', 'minimum': 12, 'maximum': 32},
                'theme': {'type': 'string', 'enum': ['light', 'dark', 'stage']}
            },
            'additionalProperties': False
        }
    }
}

PRIVACY_FLAGS = [
    'isPublic', 'showFavorites', 'showActivity', 'showContributions', 'showReviews',
    'allowContact', 'showStats', 'showBio', 'showLocation', 'showWebsite',
]

privacy_update = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'profilePrivacy': {
            'type': 'object',
            'properties': {flag: {'type': 'boolean'} for flag in PRIVACY_FLAGS},
            'additionalProperties': False
        }
    },
    'required': ['profilePrivacy']
}

sync_operation = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'id': {'type': 'string', 'minLength': 1, 'maxLength': 100},
        'operation': {'type': 'string', 'enum': ['create', 'update', 'delete']},
        'entity': {'type': 'string', 'enum': ['song', 'setlist', 'arrangement', 'user']},
        'entityId': {'type': 'string'},
        'data': {},
        'timestamp': {'type': 'number'},
        'clientId': {'type': 'string'}
    },
    'required': ['id', 'operation', 'entity', 'entityId', 'timestamp']
}

sync_batch = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'operations': {'type': 'array', 'items': sync_operation, 'maxItems': 50},
        'clientLastSync': {'type': 'number'}
    },
    'required': ['operations']
}

sync_resolution = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'operationId': {'type': 'string'},
        'choice': {'type': 'string', 'enum': ['client', 'server', 'merge']},
        'entity': {'type': 'string', 'enum': ['song', 'setlist', 'arrangement', 'user']},
        'entityId': {'type': 'string'},
        'data': {}
    },
    'required': ['operationId', 'choice']
}

storage_cleanup = {
    '$schema': 'http://json-schema.org/schema#',
    'type': 'object',
    'properties': {
        'dryRun': {'type': 'boolean'}
    }
}
