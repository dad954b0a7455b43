"""Render the texts sopsecrets prints (env templates, secret overviews)."""

import jinja2


class TemplatingError(Exception):
    pass


class Jinja2Engine(object):
    def __init__(self):
        self.env = jinja2.Environment(
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=jinja2.StrictUndefined,
        )

    def expand(self, templatestr, args, identifier="<template>"):
        try:
            tmpl = self.env.from_string(templatestr)
            tmpl.filename = identifier
            return tmpl.render(**args)
        except jinja2.exceptions.TemplateError as e:
            raise TemplatingError(
                "Error while rendering {}: {}".format(identifier, e)
            ) from e


engine = Jinja2Engine()


def expand(templatestr, **args):
    return engine.expand(templatestr, args)
