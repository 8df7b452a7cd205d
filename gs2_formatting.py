import re

MAX_LINE_LENGTH = 120
INDENT_STR = '    '

def format_source(source: str) -> str:
    max_line = MAX_LINE_LENGTH

    lines = source.split('\n')
    result = []
    for line in lines:
        line = line.rstrip()
        if len(line) <= max_line or _is_comment(line):
            result.append(line)
        else:
            formatted = _format_long_line(line, max_line)
            final = []
            for fl in formatted:
                if len(fl) > max_line and fl != line:
                    final.extend(_format_long_line(fl, max_line))
                else:
                    final.append(fl)
            result.extend(final)
    return '\n'.join(result)

def _is_comment(line: str) -> bool:
    return line.lstrip().startswith('//')

def _get_indent(line: str) -> tuple:
    stripped = line.lstrip()
    indent = line[:len(line) - len(stripped)]
    return indent, stripped

def _format_long_line(line: str, max_line: int = MAX_LINE_LENGTH) -> list:
    indent, content = _get_indent(line)
    inner_indent = indent + INDENT_STR

    for formatter in [
        _try_format_array,
        _try_format_condition,
        _try_format_string_concat,
        _try_format_call,
    ]:
        result = formatter(content, indent, inner_indent)
        if result:
            return result

    return [line]

def _find_matching_bracket(text: str, open_pos: int, open_char: str, close_char: str) -> int:
    depth = 1
    pos = open_pos + 1
    in_string = False
    while pos < len(text) and depth > 0:
        ch = text[pos]
        if in_string:
            if ch == '\\':
                pos += 2
                continue
            if ch == '"':
                in_string = False
        else:
            if ch == '"':
                in_string = True
            elif ch == open_char:
                depth += 1
            elif ch == close_char:
                depth -= 1
        pos += 1
    return pos - 1 if depth == 0 else -1

def _split_top_level(text: str, separator: str = ',') -> list:
    """Split text at separator occurrences outside strings and brackets."""
    parts = []
    current = []
    depth = 0
    in_string = False
    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            current.append(ch)
            if ch == '\\':
                i += 1
                if i < len(text):
                    current.append(text[i])
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            current.append(ch)
        elif ch in '([{':
            depth += 1
            current.append(ch)
        elif ch in ')]}':
            depth -= 1
            current.append(ch)
        elif depth == 0 and text.startswith(separator, i):
            parts.append(''.join(current).strip())
            current = []
            i += len(separator)
            continue
        else:
            current.append(ch)
        i += 1
    remaining = ''.join(current).strip()
    if remaining:
        parts.append(remaining)
    return parts

def _is_inside_string(line: str, pos: int) -> bool:
    in_string = False
    i = 0
    while i < pos:
        ch = line[i]
        if ch == '\\' and in_string:
            i += 2
            continue
        if ch == '"':
            in_string = not in_string
        i += 1
    return in_string

def _group_items(items: list, inner_indent: str) -> list:
    lines = []
    current_group = []
    current_len = len(inner_indent)

    for item in items:
        item_str = item.strip()
        add_len = len(item_str) + (2 if current_group else 0)

        if current_group and current_len + add_len > MAX_LINE_LENGTH:
            lines.append(f'{inner_indent}{", ".join(current_group)},')
            current_group = [item_str]
            current_len = len(inner_indent) + len(item_str)
        else:
            current_group.append(item_str)
            current_len += add_len

    if current_group:
        lines.append(f'{inner_indent}{", ".join(current_group)}')
    return lines

def _try_format_array(content: str, indent: str, inner_indent: str) -> list:
    # array literals only; a trailing '{' opens a block
    for m in re.finditer(r'\{', content):
        brace_start = m.start()
        if _is_inside_string(content, brace_start):
            continue
        before = content[:brace_start].rstrip()
        if not before or before[-1] not in ('=', ',', '('):
            continue

        brace_end = _find_matching_bracket(content, brace_start, '{', '}')
        if brace_end < 0:
            continue

        elements = _split_top_level(content[brace_start + 1:brace_end], ',')
        if len(elements) <= 1:
            continue

        prefix_text = content[:brace_start]
        suffix = content[brace_end + 1:]

        lines = [f'{indent}{prefix_text}{{']
        lines.extend(_group_items(elements, inner_indent))
        lines.append(f'{indent}}}{suffix}')
        return lines

    return None

def _try_format_call(content: str, indent: str, inner_indent: str) -> list:
    control_keywords = {'if', 'while', 'for', 'with', 'function'}

    best = None
    for m in re.finditer(r'(\w+)\s*\(', content):
        if m.group(1) in control_keywords or _is_inside_string(content, m.start()):
            continue
        paren_start = content.index('(', m.start())
        paren_end = _find_matching_bracket(content, paren_start, '(', ')')
        if paren_end < 0:
            continue
        args = _split_top_level(content[paren_start + 1:paren_end], ',')
        if len(args) <= 1:
            continue
        if len(indent) + paren_end + 1 > MAX_LINE_LENGTH:
            best = (paren_start, paren_end, args)
            break
        if best is None and len(args) >= 3:
            best = (paren_start, paren_end, args)

    if not best:
        return None

    paren_start, paren_end, args = best
    prefix_text = content[:paren_start]
    suffix = content[paren_end + 1:]

    lines = [f'{indent}{prefix_text}(']
    lines.extend(_group_items(args, inner_indent))
    lines.append(f'{indent}){suffix}')
    return lines

def _try_format_condition(content: str, indent: str, inner_indent: str) -> list:
    m = re.match(r'((?:}\s*else\s+)?(?:if|while))\s*\(', content)
    if not m:
        m = re.match(r'(return\s+)', content)
        if m:
            return _try_format_return_condition(content, indent, inner_indent, m)
        return None

    keyword = m.group(1)
    paren_start = content.index('(', m.start())
    paren_end = _find_matching_bracket(content, paren_start, '(', ')')
    if paren_end < 0:
        return None

    condition = content[paren_start + 1:paren_end]
    suffix = content[paren_end + 1:]

    parts = _split_condition(condition)
    if len(parts) <= 1:
        return None

    cont_indent = inner_indent + INDENT_STR
    lines = [f'{indent}{keyword} ({parts[0]}']
    for part in parts[1:]:
        lines.append(f'{cont_indent}{part}')
    lines[-1] = lines[-1] + ')' + suffix
    return lines

def _try_format_return_condition(content, indent, inner_indent, m):
    prefix = m.group(1)
    rest = content[m.end():]
    suffix = ''
    if rest.endswith(';'):
        rest = rest[:-1]
        suffix = ';'

    parts = _split_condition(rest)
    if len(parts) <= 1:
        return None

    cont_indent = inner_indent + INDENT_STR
    lines = [f'{indent}{prefix}{parts[0]}']
    for part in parts[1:]:
        lines.append(f'{cont_indent}{part}')
    lines[-1] = lines[-1] + suffix
    return lines

def _split_condition(condition: str) -> list:
    """Split a condition at top-level && and || keeping the operator on the next part."""
    parts = []
    current = []
    depth = 0
    in_string = False
    i = 0
    text = condition
    while i < len(text):
        ch = text[i]
        if in_string:
            current.append(ch)
            if ch == '\\':
                i += 1
                if i < len(text):
                    current.append(text[i])
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            current.append(ch)
        elif ch in '([{':
            depth += 1
            current.append(ch)
        elif ch in ')]}':
            depth -= 1
            current.append(ch)
        elif depth == 0 and text[i:i+2] in ('&&', '||'):
            parts.append(''.join(current).strip())
            current = [text[i:i+2] + ' ']
            i += 2
            continue
        else:
            current.append(ch)
        i += 1

    remaining = ''.join(current).strip()
    if remaining:
        parts.append(remaining)
    return parts

def _try_format_string_concat(content: str, indent: str, inner_indent: str) -> list:
    if '"' not in content:
        return None

    m = re.match(r'(return\s+|[\w.\[\]]+\s*=\s*)', content)
    if not m:
        return None

    prefix_part = m.group(1)
    rest = content[m.end():]
    suffix = ''
    if rest.endswith(';'):
        rest = rest[:-1]
        suffix = ';'

    parts = _split_top_level(rest, ' @ ')
    if len(parts) <= 1:
        return None

    lines = [f'{indent}{prefix_part}{parts[0]}']
    for part in parts[1:]:
        lines.append(f'{inner_indent}@ {part}')
    lines[-1] += suffix
    return lines
