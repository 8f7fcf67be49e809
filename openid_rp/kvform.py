"""Utilities for key-value format conversions.

Key-value form is the body format of direct responses: one C{key:value}
pair per line, each line terminated by a newline.
"""
import logging

__all__ = ['seqToKV', 'kvToSeq', 'dictToKV', 'kvToDict', 'KVFormError']


_LOGGER = logging.getLogger(__name__)


class KVFormError(ValueError):
    pass


def _reporter(function_name, data, strict):
    """Return a callable which reports a problem found in C{data}.

    In strict mode problems raise L{KVFormError}, otherwise they are logged.
    """
    def report(msg):
        formatted = '%s warning: %s: %r' % (function_name, msg, data)
        if strict:
            raise KVFormError(formatted)
        _LOGGER.debug(formatted)
    return report


def _checkField(name, text, report):
    if '\n' in text:
        raise KVFormError('Invalid input for seqToKV: %s contains newline: %r' % (name, text))
    if text.strip() != text:
        report('%s has whitespace at beginning or end: %r' % (name.capitalize(), text))


def seqToKV(seq, strict=False):
    """Represent a sequence of pairs of strings as newline-terminated
    key:value pairs. The pairs are generated in the order given.

    Values are not escaped. Only the first colon on a line separates the
    key from the value, so a value may contain colons, but neither keys
    nor values may contain a newline.

    @param seq: The pairs
    @type seq: List[Tuple[str, str]]

    @return: A string representation of the sequence
    @rtype: str

    @raise KVFormError: If a key or value can not be represented.
    """
    report = _reporter('seqToKV', seq, strict)

    lines = []
    for key, value in seq:
        if not isinstance(key, str):
            report('Converting key to text: %r' % (key,))
            key = str(key)
        if not isinstance(value, str):
            report('Converting value to text: %r' % (value,))
            value = str(value)

        if ':' in key:
            raise KVFormError('Invalid input for seqToKV: key contains colon: %r' % (key,))
        _checkField('key', key, report)
        _checkField('value', value, report)

        lines.append('%s:%s\n' % (key, value))

    return ''.join(lines)


def kvToSeq(data, strict=False):
    """
    Parse newline-terminated key:value pair string into a sequence.

    Blank lines are skipped. Whitespace around keys and values is removed,
    with a warning.

    @type data: str

    @rtype: List[Tuple[str, str]]
    """
    report = _reporter('kvToSeq', data, strict)

    lines = data.split('\n')
    if lines[-1]:
        report('Does not end in a newline')
    else:
        lines.pop()

    pairs = []
    for line_num, line in enumerate(lines, 1):
        if not line.strip():
            continue

        key, colon, value = line.partition(':')
        if not colon:
            report('Line %d does not contain a colon' % line_num)
            continue

        if key.strip() != key:
            report('In line %d, ignoring leading or trailing whitespace in key %r' % (line_num, key))
        if not key.strip():
            report('In line %d, got empty key' % (line_num,))
        if value.strip() != value:
            report('In line %d, ignoring leading or trailing whitespace in value %r' % (line_num, value))

        pairs.append((key.strip(), value.strip()))

    return pairs


def dictToKV(d):
    return seqToKV(sorted(d.items()))


def kvToDict(s):
    return dict(kvToSeq(s))
