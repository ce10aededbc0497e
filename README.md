# faultinject

Tools for testing how a program copes when the library functions it calls
fail. You describe in an XML *plan* which functions should fail, with which
return value and `errno`, and under which triggers. `faultinject` renders the
plan into the source of an interception stub, compiles it into a preloadable
shared library and can run your program with that library preloaded.

Two analysis tools help you write plans:

* `faultinject-callsites` disassembles a binary, finds every call to a library
  function and reports whether the caller checks the returned value. For calls
  that do not, it prints plan entries that make exactly those calls fail.
* `faultinject-profile` walks a single disassembled x86 function backwards
  from its exits and reports the values it can return.

## Installation

```
pip install .
```

The commands start external programs: `g++` and `xml2-config` to build
stubs, and `objdump`, `addr2line` and `gcov` to analyse binaries. These must
be on your `PATH`.

## Writing a plan

```xml
<plan>
  <trigger id="t1" class="CallStackTrigger">
    <args>
      <frame>
        <module>/usr/local/bin/myprog</module>
        <offset>8048a1c</offset>
      </frame>
    </args>
  </trigger>

  <function name="opendir" retval="0" errno="13">
    <triggerx ref="t1" />
  </function>
</plan>
```

Each `<function>` element needs `name` and `retval`; `errno`, `calloriginal`
and `argc` default to `0`, and `alias` names the exported symbol when it
differs from `name`. A function may appear several times; all its entries are
gathered into one table. An entry fires when every trigger it refers to fires,
and an entry with no triggers always fires.

## Building a stub and running a program under it

```
faultinject [-e 0|1] [-E examine_args.cpp] [-t "<program> <args>"] [-v] plan.xml
```

* `-e` sets whether injection starts enabled (default `1`).
* `-E` names a file of argument examiners that the stub source includes.
* `-t` is the program to run; its arguments are split on spaces and tabs.
* `-v` reports each step on standard error.
* `-f` takes an argument and is accepted, but has no effect.

The command writes `intercept.stub.cpp` and a `symbols` file into the working
directory and compiles `intercept.stub.so` (`intercept.stub.dylib` on macOS).
Without `-t` it stops there. With `-t`, the program runs with the library
preloaded (`LD_PRELOAD`, or `DYLD_INSERT_LIBRARIES` on macOS) and the exit
code is `0` when the program succeeded, the program's own exit status when it
failed, `128 + signal` when it was killed by a signal (a closing `</plan>` is
then appended to `replay.xml`), and `-1` when it could not be started.

## Finding unchecked calls

```
faultinject-callsites <binary> <function>|- [retval] [errno] > plan.xml
```

Pass `-` instead of a function name to examine the default set (`opendir`,
`getcwd`, `fdopen`, `popen`, `getlogin`, `cuserid`, `getspnam`, `getspent`).
`retval` defaults to `-1` and `errno` to `EINVAL`. A report for each call
site, including its source line and gcov execution count where available,
goes to standard error; the generated plan goes to standard output. Call sites
that gcov shows were never executed get no plan entry.

## Profiling return values

```
faultinject-profile [listing.asm] [references.txt]
```

The listing is `objdump -d -M intel` output of one function and defaults to
`x.asm`. When a reference file is given, the calls whose results become the
function's return value are written to it instead of being printed.

## Using the library

```python
from faultinject.stubgen import render_stub
from faultinject.x86builder import build_function_graph
from faultinject.profiler import reverse_graph, walk_return_values_x86
from faultinject.graph import EXIT_NODE

with open("plan.xml") as fh:
    stub = render_stub(fh.read(), 1, None)
print(stub.source, stub.symbols_text)

with open("x.asm") as fh:
    graph = build_function_graph(fh.read())
for line in walk_return_values_x86(reverse_graph(graph), EXIT_NODE):
    print(line)
```

Other pieces:

* `faultinject.sparcbuilder.build_sparc_graph` builds a graph from a SPARC
  listing; `walk_return_values_sparc` traces its `%o0` return value.
* `faultinject.callsite.build_call_site_graph` and
  `faultinject.callcheck.check_return_value` do the work behind
  `faultinject-callsites`.
* `faultinject.triggers.Trigger` is the base class for triggers; register
  one by class name with `register_trigger` and create it with
  `create_trigger`.
* `faultinject.injection.determine_action` decides, in process, whether a
  call to a function should fail according to a list of `FunctionInfo`
  entries, and `InjectionLog` writes an `inject.log` and a `replay.xml` plan
  of the faults it is given.

## What the package does not do

The package does not contain the native interception runtime or any trigger
implementations. The stub it compiles expects `inter.cpp`, `Trigger.cpp` and
a `triggers/` directory of trigger sources in the working directory; without
them `faultinject` reports `Compile failed` and does not run the program.