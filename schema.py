import jsonschema


def validate(data, schema):
    try:
        jsonschema.validate(data, schema)
    except jsonschema.ValidationError:
        return False
    return True


def describe_errors(data, schema):
    validator = jsonschema.Draft7Validator(schema)
    return sorted(error.message for error in validator.iter_errors(data))


scan_job = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'vpath': {'type': 'string', 'minLength': 1},
        'directory': {'type': 'string', 'minLength': 1},
        'dbPath': {'type': 'string', 'minLength': 1},
        'pause': {'type': ['integer', 'null'], 'minimum': 0},
        'saveInterval': {'type': ['integer', 'null'], 'minimum': 0},
        'skipImg': {'type': ['boolean', 'null']},
        'albumArtDirectory': {'type': ['string', 'null']},
    },
    'required': ['vpath', 'directory', 'dbPath'],
}

filepath = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'filepath': {'type': 'string'},
    },
}

rate_song = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'filepath': {'type': 'string'},
        'rating': {'type': ['number', 'null']},
    },
}

artist_albums = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'artist': {'type': ['string', 'null']},
    },
}

album_songs = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'album': {'type': ['string', 'null']},
        'artist': {'type': ['string', 'null']},
    },
}

random_songs = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'ignoreList': {'type': 'array', 'items': {'type': 'integer'}},
        'ignorePercentage': {'type': 'number'},
        'ignoreVPaths': {
            'anyOf': [
                {'type': 'object', 'additionalProperties': {'type': 'boolean'}},
                {'type': 'array', 'items': {'type': 'string'}},
            ],
        },
        'minRating': {'type': ['number', 'null']},
        'maxRating': {'type': ['number', 'null']},
    },
}

search = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'search': {'type': 'string'},
        'noArtists': {'type': 'boolean'},
        'noAlbums': {'type': 'boolean'},
        'noFiles': {'type': 'boolean'},
        'noTitles': {'type': 'boolean'},
    },
}

recently_added = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'limit': {'type': ['integer', 'string', 'null']},
    },
}

playlist_add_song = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'playlist': {'type': 'string'},
        'song': {'type': 'string'},
    },
}

playlist_remove_song = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'id': {'type': 'string'},
    },
}

playlist_save = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'title': {'type': 'string'},
        'songs': {'type': 'array', 'items': {'type': 'string'}},
    },
}

playlist_name = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'playlistname': {'type': 'string'},
    },
}

scan = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'properties': {
        'vpath': {'type': 'string'},
        'token': {'type': 'string'},
    },
}
